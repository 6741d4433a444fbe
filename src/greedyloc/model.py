"""Integrated-Gaussian forward model, squared loss, and greedy insertion."""

import logging
import math
import numbers
from dataclasses import dataclass

import mlx.core as mx
import numpy as np

from .config import DTYPES, ConfigurationError, ImageSizeError

logger = logging.getLogger(__name__)

EPS = 1e-8


@dataclass
class PointSource:
    """Point emitter. ``x`` is the column, ``y`` the row; pixel ``i`` is centred at ``i``."""

    x: float
    y: float
    intensity: float

    def shifted(self, dx, dy):
        """Return a new source translated by (dx, dy)."""
        return PointSource(self.x + dx, self.y + dy, self.intensity)


# ── Parameter packing ─────────────────────────────────────────────────────────


def pack_sources(sources, dtype=mx.float32):
    """Flatten sources to ``[x0, y0, I0, x1, y1, I1, ...]``."""
    flat = [float(v) for s in sources for v in (s.x, s.y, s.intensity)]
    return mx.array(flat, dtype=dtype)


def unpack_into(theta, sources):
    """Write a packed parameter vector back into ``sources`` in place."""
    values = np.array(theta).reshape(-1, 3)
    for src, (x, y, amp) in zip(sources, values):
        src.x = float(x)
        src.y = float(y)
        src.intensity = float(amp)


def as_image(image, dtype=mx.float32):
    """Convert a NumPy or MLX 2D array to an MLX array of ``dtype``."""
    if isinstance(image, mx.array):
        arr = image.astype(dtype)
    else:
        np_dtype = np.float64 if dtype == mx.float64 else np.float32
        arr = mx.array(np.asarray(image, dtype=np_dtype), dtype=dtype)
    if arr.ndim != 2:
        raise ImageSizeError(f"expected a 2D image, got shape {tuple(arr.shape)}")
    return arr


# ── Forward model ─────────────────────────────────────────────────────────────


class ForwardModel:
    """Render point sources with a pixel-integrated isotropic Gaussian PSF.

    The PSF is separable, so each source contributes the outer product of two
    1D profiles, one per axis:

        P(c; mu) = 1/2 [erf((c + 1/2 - mu) / (sigma sqrt 2))
                        - erf((c - 1/2 - mu) / (sigma sqrt 2))]

    and ``image[r, c] = sum_k I_k P(r; y_k) P(c; x_k)``.

    Parameters
    ----------
    sigma : PSF standard deviation in pixels
    patch_size : side length of the square rendered patch
    dtype : "float32" or "float64" (or an MLX dtype)
    """

    def __init__(self, sigma, patch_size, dtype="float32"):
        if not (isinstance(sigma, numbers.Real) and math.isfinite(sigma) and sigma > 0):
            raise ConfigurationError(f"sigma must be > 0, got {sigma!r}")
        if not isinstance(patch_size, numbers.Integral) or patch_size <= 0:
            raise ConfigurationError(f"patch_size must be an integer > 0, got {patch_size!r}")
        if isinstance(dtype, str):
            if dtype not in DTYPES:
                raise ConfigurationError(f"unknown dtype {dtype!r}")
            dtype = DTYPES[dtype]

        self.sigma = float(sigma)
        self.patch_size = int(patch_size)
        self.dtype = dtype
        self.coords = mx.arange(self.patch_size, dtype=dtype)
        self._scale = 1.0 / (math.sqrt(2.0) * self.sigma)
        self._dnorm = 1.0 / (math.sqrt(2.0 * math.pi) * self.sigma)

    @property
    def shape(self):
        return (self.patch_size, self.patch_size)

    def profiles(self, centers):
        """(K,) centres -> (K, N) pixel-integrated 1D PSF profiles."""
        d = self.coords[None, :] - centers[:, None]
        return 0.5 * (mx.erf((d + 0.5) * self._scale) - mx.erf((d - 0.5) * self._scale))

    def profile_derivatives(self, centers):
        """Derivative of :meth:`profiles` with respect to the centre."""
        d = self.coords[None, :] - centers[:, None]
        s2 = self._scale * self._scale
        upper = mx.exp(-((d + 0.5) ** 2) * s2)
        lower = mx.exp(-((d - 0.5) ** 2) * s2)
        return self._dnorm * (lower - upper)

    def render_params(self, theta):
        """Render a packed ``(3K,)`` parameter vector to an (N, N) image."""
        if theta.size == 0:
            return mx.zeros(self.shape, dtype=self.dtype)
        p = theta.reshape(-1, 3)
        px = self.profiles(p[:, 0])
        py = self.profiles(p[:, 1])
        return (py.T * p[:, 2]) @ px

    def render(self, sources):
        return self.render_params(pack_sources(sources, self.dtype))

    def template(self, x, y):
        """Unit-intensity PSF image centred at (x, y)."""
        return self.render([PointSource(x, y, 1.0)])

    def jacobian(self, theta):
        """Analytic Jacobian of the flattened image, shape (N*N, 3K).

        Columns follow the packing order (x, y, intensity) per source.
        """
        p = theta.reshape(-1, 3)
        K = p.shape[0]
        px = self.profiles(p[:, 0])
        py = self.profiles(p[:, 1])
        dpx = self.profile_derivatives(p[:, 0])
        dpy = self.profile_derivatives(p[:, 1])
        amp = p[:, 2][:, None, None]

        d_int = py[:, :, None] * px[:, None, :]  # (K, N, N)
        d_x = amp * (py[:, :, None] * dpx[:, None, :])
        d_y = amp * (dpy[:, :, None] * px[:, None, :])
        J = mx.stack([d_x, d_y, d_int], axis=1)  # (K, 3, N, N)
        return J.reshape(3 * K, -1).T


# ── Squared loss ──────────────────────────────────────────────────────────────


class ResidualEngine:
    """Squared loss and its analytic gradient against one observed patch."""

    def __init__(self, model, observed):
        observed = as_image(observed, model.dtype)
        if tuple(observed.shape) != model.shape:
            raise ImageSizeError(
                f"patch shape {tuple(observed.shape)} does not match model shape {model.shape}"
            )
        self.model = model
        self.observed = observed

    def residual(self, theta):
        return self.observed - self.model.render_params(theta)

    def loss(self, theta):
        r = self.residual(theta)
        return mx.sum(r * r).item()

    def loss_of(self, sources):
        return self.loss(pack_sources(sources, self.model.dtype))

    def linearize(self, theta):
        """Return the flat residual, the Jacobian and the loss gradient at ``theta``."""
        r = self.residual(theta).reshape(-1)
        J = self.model.jacobian(theta)
        grad = -2.0 * (J.T @ r)
        return r, J, grad

    def gradient(self, theta):
        return self.linearize(theta)[2]


# ── Greedy insertion ──────────────────────────────────────────────────────────


class GreedyInsertionStep:
    """Matching-pursuit proposal of the next emitter.

    Candidates sit on a grid with ``upsample`` points per pixel spanning the
    outer pixel centres, ``[0, N - 1]`` on both axes. The correlation of the
    residual with the unit PSF at every candidate is ``B R B^T`` where row
    ``m`` of ``B`` is the 1D profile at candidate ``m``.
    """

    def __init__(self, model, upsample=2):
        if int(upsample) != upsample or upsample < 1:
            raise ConfigurationError(f"upsample must be an integer >= 1, got {upsample!r}")
        self.model = model
        self.upsample = int(upsample)
        n = (model.patch_size - 1) * self.upsample + 1
        self.candidates = np.arange(n) / self.upsample
        self._bank = model.profiles(mx.array(self.candidates, dtype=model.dtype))  # (M, N)
        sq = mx.sum(self._bank * self._bank, axis=1)
        self._norms = np.array(sq[:, None] * sq[None, :])

    def correlation_map(self, residual):
        """(M, M) correlation map; rows index y candidates, columns x."""
        return self._bank @ residual @ self._bank.T

    def propose(self, residual):
        """Return the candidate with the largest correlation as a new source.

        The intensity is the least-squares amplitude of the unit template
        against the residual, clamped at zero.
        """
        corr = np.array(self.correlation_map(residual))
        # np.argmax returns the first maximum in row-major order
        row, col = np.unravel_index(np.argmax(corr), corr.shape)
        amp = max(float(corr[row, col] / (self._norms[row, col] + EPS)), 0.0)
        src = PointSource(
            x=float(self.candidates[col]),
            y=float(self.candidates[row]),
            intensity=amp,
        )
        logger.debug(
            "proposed x=%.3f y=%.3f I=%.4g corr=%.4g", src.x, src.y, amp, corr[row, col]
        )
        return src
