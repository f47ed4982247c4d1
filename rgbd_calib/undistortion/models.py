"""
Depth Undistortion Models.

Two models correct the depth measured by the depth sensor.

Local model:
============
The depth image is split into bins of ``bin_size`` pixels. Every bin owns an
independent polynomial mapping raw depth to corrected depth:

    z' = p_bin(z)

A bin that never received enough samples is *unavailable*: its coefficients
are NaN and depth measured in it passes through unchanged.

Global model:
=============
A 2 x 2 grid of polynomials anchored at the four image corners. The
correction at pixel (u, v) is the bilinear blend of the four corner
polynomials evaluated at the depth:

    a = u / (W - 1),  b = v / (H - 1)
    z' = (1-a)(1-b) p00(z) + a(1-b) p01(z) + (1-a)b p10(z) + ab p11(z)

Cell (row, col) = (1, 1) is not a free parameter; it is derived so that

    p11(z) = p01(z) + p10(z) - p00(z)

which removes the a*b cross term: the correction varies linearly across the
image at every depth.

Applying either model to a 3D point keeps it on its viewing ray:
p' = p * z' / z.
"""

from pathlib import Path
from typing import Tuple, Union

import numpy as np

from ..calibration.projection import finite_mask, pixel_grid, scale_points_to_depth
from .polynomial import Polynomial, evaluate_polynomials, vandermonde


class LocalModel:
    """
    Per-bin polynomial depth correction.

    Args:
        image_size: Depth image size (width, height).
        bin_size: Bin size (width, height) in pixels.
        degree: Polynomial degree.
        min_degree: Polynomial minimum degree.
    """

    def __init__(
        self,
        image_size: Tuple[int, int],
        bin_size: Tuple[int, int] = (8, 8),
        degree: int = 2,
        min_degree: int = 0,
    ):
        width, height = int(image_size[0]), int(image_size[1])
        bin_w, bin_h = int(bin_size[0]), int(bin_size[1])
        if width <= 0 or height <= 0:
            raise ValueError(f"Image size must be positive, got {image_size}")
        if bin_w <= 0 or bin_h <= 0:
            raise ValueError(f"Bin size must be positive, got {bin_size}")

        self.image_size = (width, height)
        self.bin_size = (bin_w, bin_h)
        self.degree = degree
        self.min_degree = min_degree

        rows = -(-height // bin_h)
        cols = -(-width // bin_w)
        self.coefficients = np.full((rows, cols, self.polynomial_size), np.nan)

    @property
    def polynomial_size(self) -> int:
        return self.degree - self.min_degree + 1

    @property
    def shape(self) -> Tuple[int, int]:
        """Bin grid shape (rows, cols)."""
        return self.coefficients.shape[:2]

    @property
    def num_bins(self) -> int:
        rows, cols = self.shape
        return rows * cols

    def bin_of(self, u: np.ndarray, v: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Bin (row, col) of pixel coordinates."""
        return np.asarray(v) // self.bin_size[1], np.asarray(u) // self.bin_size[0]

    def is_available(self, row: int, col: int) -> bool:
        return bool(np.all(np.isfinite(self.coefficients[row, col])))

    @property
    def available_mask(self) -> np.ndarray:
        return np.all(np.isfinite(self.coefficients), axis=2)

    def polynomial(self, row: int, col: int) -> Polynomial:
        return Polynomial(self.coefficients[row, col].copy(), self.min_degree)

    def set_polynomial(self, row: int, col: int, coefficients) -> None:
        """Set a bin's coefficients; None marks the bin unavailable."""
        if coefficients is None:
            self.coefficients[row, col] = np.nan
        else:
            self.coefficients[row, col] = np.asarray(coefficients, dtype=np.float64)

    def undistort_depth(self, u: np.ndarray, v: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Corrected depth of samples at pixels (u, v); unavailable bins pass through."""
        rows, cols = self.bin_of(u, v)
        coefficients = self.coefficients[rows, cols]
        corrected = evaluate_polynomials(np.nan_to_num(coefficients), z, self.min_degree)
        available = np.all(np.isfinite(coefficients), axis=-1)
        return np.where(available, corrected, z)

    def undistort_cloud(self, cloud: np.ndarray, drop_unavailable: bool = False) -> np.ndarray:
        """
        Return a corrected copy of an organized (H, W, 3) cloud.

        With ``drop_unavailable`` the points falling in unavailable bins are
        set to NaN instead of passing through uncorrected.
        """
        result = _undistort_cloud(self, cloud)
        if drop_unavailable:
            u, v = pixel_grid(cloud.shape[:2])
            rows, cols = self.bin_of(u, v)
            result.reshape(-1, 3)[~self.available_mask[rows, cols]] = np.nan
        return result

    def save(self, path: Union[str, Path]) -> None:
        """Save the model to a ``.npz`` archive."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(
            path,
            coefficients=self.coefficients,
            image_size=np.asarray(self.image_size),
            bin_size=np.asarray(self.bin_size),
            degrees=np.asarray([self.degree, self.min_degree]),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "LocalModel":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Local model not found: {path}")
        with np.load(path) as data:
            degree, min_degree = (int(d) for d in data["degrees"])
            model = cls(
                tuple(int(s) for s in data["image_size"]),
                tuple(int(s) for s in data["bin_size"]),
                degree,
                min_degree,
            )
            model.coefficients = data["coefficients"].astype(np.float64)
        return model

    def __repr__(self) -> str:
        return (
            f"LocalModel(image_size={self.image_size}, bin_size={self.bin_size}, "
            f"available={int(self.available_mask.sum())}/{self.num_bins})"
        )


class GlobalModel:
    """
    Bilinearly interpolated 2 x 2 polynomial depth correction.

    Args:
        image_size: Depth image size (width, height).
        degree: Polynomial degree.
        min_degree: Polynomial minimum degree.
    """

    FREE_CELLS = ((0, 0), (0, 1), (1, 0))
    CONTINUITY_CELL = (1, 1)

    def __init__(
        self,
        image_size: Tuple[int, int],
        degree: int = 2,
        min_degree: int = 1,
    ):
        width, height = int(image_size[0]), int(image_size[1])
        if width < 2 or height < 2:
            raise ValueError(f"Image size must be at least 2x2, got {image_size}")
        self.image_size = (width, height)
        self.degree = degree
        self.min_degree = min_degree
        identity = Polynomial.identity(degree, min_degree).coefficients
        self.coefficients = np.tile(identity, (2, 2, 1))

    @property
    def polynomial_size(self) -> int:
        return self.degree - self.min_degree + 1

    def polynomial(self, row: int, col: int) -> Polynomial:
        return Polynomial(self.coefficients[row, col].copy(), self.min_degree)

    def weights(self, u: np.ndarray, v: np.ndarray) -> np.ndarray:
        """Bilinear weights (N, 2, 2) of pixels, indexed [row, col]."""
        width, height = self.image_size
        a = np.asarray(u, dtype=np.float64) / (width - 1)
        b = np.asarray(v, dtype=np.float64) / (height - 1)
        return np.stack([
            np.stack([(1 - a) * (1 - b), a * (1 - b)], axis=-1),
            np.stack([(1 - a) * b, a * b], axis=-1),
        ], axis=-2)

    @property
    def free_coefficients(self) -> np.ndarray:
        """Flat coefficients of the three free cells (3 * polynomial_size,)."""
        return np.concatenate([self.coefficients[r, c] for r, c in self.FREE_CELLS])

    def set_free_coefficients(self, values: np.ndarray) -> None:
        """Set the free cells and re-derive the continuity cell."""
        values = np.asarray(values, dtype=np.float64).reshape(3, self.polynomial_size)
        for (r, c), coefficients in zip(self.FREE_CELLS, values):
            self.coefficients[r, c] = coefficients
        self.solve_continuity_cell()

    def solve_continuity_cell(self) -> np.ndarray:
        """
        Derive the (1, 1) cell from the three free cells.

        The cell polynomial q must satisfy q(x) = p01(x) + p10(x) - p00(x).
        Sampling this at x = 1 .. K (K = number of coefficients) gives a
        square Vandermonde system solved for the K coefficients of q.

        Returns:
            np.ndarray: The derived coefficients.
        """
        size = self.polynomial_size
        x = np.arange(1, size + 1, dtype=np.float64)
        values = evaluate_polynomials(self.coefficients, x[:, None, None], self.min_degree)
        b = values[:, 0, 1] + values[:, 1, 0] - values[:, 0, 0]
        A = vandermonde(x, self.degree, self.min_degree)
        solution, *_ = np.linalg.lstsq(A, b, rcond=None)
        self.coefficients[self.CONTINUITY_CELL] = solution
        return solution

    def design_matrix(self, u: np.ndarray, v: np.ndarray, z: np.ndarray) -> np.ndarray:
        """
        Linear map from free coefficients to corrected depth.

        With p11 = p01 + p10 - p00 the corrected depth is

            (w00 - w11) p00(z) + (w01 + w11) p01(z) + (w10 + w11) p10(z)

        Returns:
            np.ndarray: (N, 3 * polynomial_size) design matrix.
        """
        w = self.weights(u, v)
        basis = vandermonde(z, self.degree, self.min_degree)
        w00, w01, w10, w11 = w[:, 0, 0], w[:, 0, 1], w[:, 1, 0], w[:, 1, 1]
        return np.hstack([
            (w00 - w11)[:, None] * basis,
            (w01 + w11)[:, None] * basis,
            (w10 + w11)[:, None] * basis,
        ])

    def undistort_depth(self, u: np.ndarray, v: np.ndarray, z: np.ndarray) -> np.ndarray:
        """Corrected depth of samples at pixels (u, v)."""
        w = self.weights(u, v)
        values = evaluate_polynomials(self.coefficients[None], np.asarray(z)[:, None, None], self.min_degree)
        return np.sum(w * values, axis=(-2, -1))

    def undistort_cloud(self, cloud: np.ndarray) -> np.ndarray:
        """Return a corrected copy of an organized (H, W, 3) cloud."""
        return _undistort_cloud(self, cloud)

    def copy(self) -> "GlobalModel":
        model = GlobalModel(self.image_size, self.degree, self.min_degree)
        model.coefficients = self.coefficients.copy()
        return model

    def to_dict(self) -> dict:
        return {
            "image_size": list(self.image_size),
            "degree": self.degree,
            "min_degree": self.min_degree,
            "coefficients": self.coefficients.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GlobalModel":
        model = cls(tuple(data["image_size"]), int(data["degree"]), int(data["min_degree"]))
        model.coefficients = np.asarray(data["coefficients"], dtype=np.float64)
        return model

    def __repr__(self) -> str:
        return f"GlobalModel(image_size={self.image_size}, degree={self.degree}, min_degree={self.min_degree})"


def _undistort_cloud(model, cloud: np.ndarray) -> np.ndarray:
    height, width = cloud.shape[:2]
    if (width, height) != model.image_size:
        raise ValueError(
            f"Cloud size {(width, height)} does not match model image size {model.image_size}"
        )
    result = cloud.copy()
    mask = finite_mask(cloud).ravel()
    u, v = pixel_grid((height, width))
    points = cloud.reshape(-1, 3)[mask]
    corrected = model.undistort_depth(u[mask], v[mask], points[:, 2])
    result.reshape(-1, 3)[mask] = scale_points_to_depth(points, corrected)
    return result
