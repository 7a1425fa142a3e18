#!/usr/bin/env python
# --------------------------------------------------------
# Distribution statement A. Approved for public release.
# Distribution is unlimited.
# This work was supported by the Office of Naval Research.
# --------------------------------------------------------
"""Heat-map, contour and ray overlay rendering for PyRayLimb frames.

"""

# Standard library
import pickle

# Third-party
import numpy as np
from PIL import Image
from PIL import ImageDraw

# Local
from PyRayLimb.library import in_window


def density_to_color(density, max_density: float = 1.3) -> np.ndarray:
    """Map densities to RGB colors in [0, 1].

    Parameters
    ----------
    density : float or array-like
        Density [kg/m^3].
    max_density : float
        Density at the top of the color ramp. Default 1.3.

    Returns
    -------
    rgb : ndarray, shape (..., 3)
        Colors. Densities outside [0, max_density] are magenta.

    Notes
    -----
    Five evenly spaced stops: near black, dark blue, teal, olive and
    brown-red.

    """
    stop_val = np.linspace(0.0, max_density, 5)
    stop_rgb = np.array([[0.05, 0.05, 0.05],
                         [0.00, 0.00, 0.20],
                         [0.00, 0.18, 0.20],
                         [0.20, 0.20, 0.00],
                         [0.20, 0.04, 0.00]])

    d = np.asarray(density, dtype=float)
    rgb = np.stack([np.interp(d, stop_val, stop_rgb[:, c])
                    for c in range(3)], axis=-1)

    out_of_range = ~np.isfinite(d) | (d < 0.0) | (d > max_density)
    rgb[out_of_range] = (1.0, 0.0, 1.0)
    return rgb


def contour_levels(n_levels: int, max_density: float = 1.3) -> np.ndarray:
    """Evenly spaced contour thresholds strictly inside (0, max_density)."""
    if n_levels < 0:
        raise ValueError("Number of contour levels must be non-negative")
    return np.linspace(0.0, max_density, n_levels + 2)[1:-1]


def contour_mask(field, levels) -> np.ndarray:
    """Mark pixels where a contour level is crossed.

    A pixel is marked when any level lies between it and its right or
    lower neighbour.

    """
    field = np.asarray(field, dtype=float)
    mask = np.zeros(field.shape, dtype=bool)
    for level in levels:
        above = field >= level
        mask[:, :-1] |= above[:, :-1] != above[:, 1:]
        mask[:-1, :] |= above[:-1, :] != above[1:, :]
    return mask


def render_frame(window, field, ray=None, *,
                 levels=None,
                 max_density: float = 1.3,
                 contour_color=(1.0, 1.0, 1.0),
                 contour_alpha: float = 0.25,
                 ray_color=(255, 255, 0)) -> Image.Image:
    """Render a density field with contours and a ray path.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    field : ndarray, shape (height, width)
        Density field.
    ray : dict or None
        Ray result with node arrays 'x' and 'y'.
    levels : array-like or None
        Contour thresholds, see `contour_levels`.
    max_density : float
        Top of the color ramp.
    contour_color : tuple of float
        RGB blended over contour pixels.
    contour_alpha : float
        Blend weight of the contour color.
    ray_color : tuple of int
        RGB of the ray polyline.

    Returns
    -------
    image : PIL.Image.Image
        RGB image; pixels outside the ground/altitude bounds are black.

    """
    field = np.asarray(field, dtype=float)
    rgb = density_to_color(field, max_density)

    if levels is not None and len(levels) > 0:
        mask = contour_mask(field, levels)
        rgb[mask] = (rgb[mask] * (1.0 - contour_alpha)
                     + np.asarray(contour_color) * contour_alpha)

    rows, cols = np.indices(field.shape, dtype=float)
    rgb[~in_window(window, cols, rows)] = 0.0

    image = Image.fromarray(np.round(255.0 * np.clip(rgb, 0.0, 1.0))
                            .astype(np.uint8))

    if ray is not None and len(ray["x"]) > 1:
        draw = ImageDraw.Draw(image)
        draw.line([(float(x), float(y)) for x, y in zip(ray["x"], ray["y"])],
                  fill=tuple(ray_color), width=1)
    return image


def save_frame(image, file_path):
    """Save a rendered frame as PNG."""
    image.save(file_path, format="PNG")


def save_to_file(output, file_path):
    """Save dictionary to a pickle file.

    Parameters
    ----------
    output : dict
        Dictionary to save to pickle file
    file_path : string
        Full filepath (including .p extension) of output file

    """
    # Save to pickle file
    with open(file_path, 'wb') as f:
        pickle.dump(output, f)
