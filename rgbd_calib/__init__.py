"""Extrinsic and depth undistortion calibration of color + depth sensor rigs."""

__version__ = "0.1.0"

from . import calibration
from . import data
from . import optim
from . import sensors
from . import undistortion
from . import utils
from .calibration.calibration import Calibration

__all__ = ["Calibration"]
