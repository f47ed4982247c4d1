"""Sensor models of the color + depth rig."""

from .color import ColorSensor
from .depth import DepthSensor

__all__ = ["ColorSensor", "DepthSensor"]
