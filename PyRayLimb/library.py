#!/usr/bin/env python
# --------------------------------------------------------
# Distribution statement A. Approved for public release.
# Distribution is unlimited.
# This work was supported by the Office of Naval Research.
# --------------------------------------------------------
"""This library contains components for PyRayLimb software.

"""

# Third-party
import numpy as np
from scipy.interpolate import BPoly
from scipy.spatial.transform import Rotation

# Typing
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

# Local
from PyRayLimb import logger


def constants():
    """Define physical constants for the limb simulation.

    Returns
    -------
    R_P : float
        Planet radius [km].
    C_P : float
        Planet circumference [km].
    K_GD : float
        Gladstone-Dale constant for air [m^3/kg].
        n = 1 + K_GD * rho.

    """
    # Planet (Earth) radius (km)
    R_P = 6371.

    # Planet circumference (km)
    C_P = 2.0 * np.pi * R_P

    # Gladstone-Dale constant for air at visible wavelengths (m^3/kg)
    K_GD = 2.26e-4

    return R_P, C_P, K_GD


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def window_geometry(arc_length_km: float = 400.,
                    altitude_km: float = 35.,
                    resolution: float = 10.,
                    R_P: Optional[float] = None) -> Dict[str, Any]:
    """Describe the rendering window cut through the planet limb.

    Parameters
    ----------
    arc_length_km : float
        Ground arc covered by the window [km]. Default 400.
    altitude_km : float
        Altitude covered by the window [km]. Default 35.
    resolution : float
        Pixels per kilometer. Default 10.
    R_P : float or None
        Planet radius [km]. If None, defaults to value from `constants()`.

    Returns
    -------
    window : dict
        Window description with keys 'arc_length_km', 'altitude_km',
        'resolution', 'planet_radius_km', 'angle_deg', 'top_km',
        'bottom_km', 'left_km', 'right_km', 'width', 'height'.

    Notes
    -----
    The window is the bounding box, in planet-centred cartesian km, of the
    annular sector spanned by the ground arc and the altitude range. The
    planet centre is the origin and the sector is centred on the +z axis.

    """
    if R_P is None:
        R_P, _, _ = constants()

    if arc_length_km <= 0 or altitude_km <= 0 or resolution <= 0:
        raise ValueError("Window arc length, altitude and resolution "
                         "must be positive")

    angle_deg = arc_length_km / (2.0 * np.pi * R_P) * 360.0
    half = np.radians(angle_deg / 2.0)

    top_km = R_P + altitude_km
    right_km = np.sin(half) * top_km
    left_km = -right_km
    bottom_km = np.cos(half) * R_P

    width = int(np.ceil((right_km - left_km) * resolution))
    height = int(np.ceil((top_km - bottom_km) * resolution))

    return {"arc_length_km": float(arc_length_km),
            "altitude_km": float(altitude_km),
            "resolution": float(resolution),
            "planet_radius_km": float(R_P),
            "angle_deg": float(angle_deg),
            "top_km": float(top_km),
            "bottom_km": float(bottom_km),
            "left_km": float(left_km),
            "right_km": float(right_km),
            "width": width,
            "height": height}


def cartesian_to_polar(vector):
    """Convert cartesian vectors to (elevation, azimuth, length).

    Parameters
    ----------
    vector : array-like, shape (..., 3)
        Cartesian (x, y, z) components.

    Returns
    -------
    polar : ndarray, shape (..., 3)
        Elevation above the x-z plane [deg], azimuth in the x-z plane
        measured from +x toward +z in [0, 360) [deg], and length.

    """
    v = np.asarray(vector, dtype=float)
    x, y, z = v[..., 0], v[..., 1], v[..., 2]
    length = np.sqrt(x * x + y * y + z * z)
    elevation = np.degrees(np.arctan2(y, np.hypot(x, z)))
    azimuth = np.mod(np.degrees(np.arctan2(z, x)), 360.0)
    return np.stack([elevation, azimuth, length], axis=-1)


def polar_to_cartesian(polar):
    """Convert (elevation, azimuth, length) vectors to cartesian.

    Parameters
    ----------
    polar : array-like, shape (..., 3)
        Elevation [deg], azimuth [deg] and length.

    Returns
    -------
    vector : ndarray, shape (..., 3)
        Cartesian (x, y, z) components.

    """
    p = np.asarray(polar, dtype=float)
    elevation = np.radians(p[..., 0])
    azimuth = np.radians(p[..., 1])
    length = p[..., 2]
    in_plane = np.cos(elevation) * length
    return np.stack([np.cos(azimuth) * in_plane,
                     np.sin(elevation) * length,
                     np.sin(azimuth) * in_plane], axis=-1)


def normalize(vector, length: float = 1.0):
    """Scale vectors to the given length; zero vectors are returned as is."""
    v = np.asarray(vector, dtype=float)
    norm = np.linalg.norm(v, axis=-1, keepdims=True)
    safe = np.where(norm == 0.0, 1.0, norm)
    return np.where(norm == 0.0, v, v * (length / safe))


def rotate(vector, axis, angle_deg: float):
    """Rotate vectors about an axis using the right-hand rule.

    Parameters
    ----------
    vector : array-like, shape (3,) or (N, 3)
        Vectors to rotate.
    axis : array-like, shape (3,)
        Rotation axis; need not be normalized.
    angle_deg : float
        Rotation angle [deg].

    Returns
    -------
    rotated : ndarray
        Rotated vectors, same shape as `vector`.

    Notes
    -----
    The simulation plane is the x-z plane. Rotating about (0, -1, 0) turns
    +x toward +z, i.e. counter-clockwise in the window.

    """
    rotvec = normalize(axis) * angle_deg
    return Rotation.from_rotvec(rotvec, degrees=True).apply(
        np.asarray(vector, dtype=float))


def _pixel_to_cartesian(window, x, y):
    """Map window pixel coordinates to planet-centred (cx, cz) [km]."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    cx = ((x / window["width"]) * (window["right_km"] - window["left_km"])
          + window["left_km"])
    cz = (((window["height"] - y) / window["height"])
          * (window["top_km"] - window["bottom_km"]) + window["bottom_km"])
    return cx, cz


def _scalar_or_array(value, *inputs):
    """Return a float when every input was a scalar."""
    if all(np.ndim(i) == 0 for i in inputs):
        return float(value)
    return value


def to_planet_coord(window, x, y):
    """Convert window pixel coordinates to altitude and ground distance.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    x, y : float or array-like
        Pixel column and row (row 0 is the top of the window).

    Returns
    -------
    alt_km : float or ndarray
        Altitude above the planet surface [km].
    ground_km : float or ndarray
        Ground arc distance from the left edge of the window [km].

    """
    cx, cz = _pixel_to_cartesian(window, x, y)
    polar = cartesian_to_polar(np.stack([cx, np.zeros_like(cx), cz],
                                        axis=-1))
    alt_km = polar[..., 2] - window["planet_radius_km"]
    ground_km = ((90.0 - polar[..., 1] + window["angle_deg"] / 2.0)
                 / window["angle_deg"]) * window["arc_length_km"]
    return (_scalar_or_array(alt_km, x, y),
            _scalar_or_array(ground_km, x, y))


def to_pixel(window, alt_km, ground_km):
    """Convert altitude and ground distance to window pixel coordinates.

    This is the inverse of `to_planet_coord`.

    """
    alt = np.asarray(alt_km, dtype=float)
    ground = np.asarray(ground_km, dtype=float)
    alt, ground = np.broadcast_arrays(alt, ground)

    azimuth = (90.0 + window["angle_deg"] / 2.0
               - (ground / window["arc_length_km"]) * window["angle_deg"])
    length = window["planet_radius_km"] + alt
    c = polar_to_cartesian(np.stack([np.zeros_like(alt), azimuth, length],
                                    axis=-1))

    x = ((c[..., 0] - window["left_km"])
         / (window["right_km"] - window["left_km"])) * window["width"]
    y = window["height"] - (((c[..., 2] - window["bottom_km"])
                             / (window["top_km"] - window["bottom_km"]))
                            * window["height"])
    return (_scalar_or_array(x, alt_km, ground_km),
            _scalar_or_array(y, alt_km, ground_km))


def in_window(window, x, y):
    """Check whether pixel positions lie inside the ground/altitude bounds."""
    alt, ground = to_planet_coord(window, x, y)
    inside = ((ground >= 0.0) & (ground <= window["arc_length_km"])
              & (alt >= 0.0) & (alt <= window["altitude_km"]))
    if np.ndim(inside) == 0:
        return bool(inside)
    return inside


def local_vertical(window, x, y):
    """Angle of the local vertical (planet radial) at a window point [deg]."""
    cx, cz = _pixel_to_cartesian(window, x, y)
    polar = cartesian_to_polar(np.stack([cx, np.zeros_like(cx), cz],
                                        axis=-1))
    return _scalar_or_array(polar[..., 1], x, y)


def local_direction(window, x: float, y: float,
                    elevation_deg: float) -> float:
    """Convert an elevation above the local horizon to a window angle.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    x, y : float
        Pixel position of the observer.
    elevation_deg : float
        Elevation above the local horizontal [deg]; the horizon direction
        points toward increasing ground distance.

    Returns
    -------
    direction_deg : float
        Direction angle in the window plane, counter-clockwise from +x.

    """
    # Counter-clockwise rotation axis of the window plane
    plane_axis = np.array([0.0, -1.0, 0.0])

    cx, cz = _pixel_to_cartesian(window, x, y)
    up = normalize(np.array([float(cx), 0.0, float(cz)]))
    horizon = rotate(up, plane_axis, -90.0)
    heading = rotate(horizon, plane_axis, elevation_deg)
    return float(cartesian_to_polar(heading)[1])


# ---------------------------------------------------------------------------
# Density field
# ---------------------------------------------------------------------------

def bezier_cubic(n1, h1, h2, n2, frac):
    """Evaluate a 1-D cubic Bézier curve.

    Parameters
    ----------
    n1, n2 : float
        End nodes.
    h1, h2 : float
        Handles.
    frac : float or array-like
        Curve parameter in [0, 1].

    Returns
    -------
    value : float or ndarray
        Curve value at `frac`.

    """
    coeffs = np.array([[n1], [h1], [h2], [n2]], dtype=float)
    curve = BPoly(coeffs, [0.0, 1.0])
    value = curve(np.asarray(frac, dtype=float))
    return _scalar_or_array(value, frac)


def build_baseline_gradient(n_stops: int = 100) -> Tuple[np.ndarray,
                                                         np.ndarray]:
    """Build the baseline altitude-density gradient stops.

    Parameters
    ----------
    n_stops : int
        Number of gradient stops. Default is 100.

    Returns
    -------
    alt_km : ndarray
        Stop altitudes [km], strictly increasing.
    density : ndarray
        Stop densities [kg/m^3].

    Notes
    -----
    The profile follows the US standard atmosphere (1962) plot, traced as
    two cubic Bézier segments with altitude on the x axis and density on
    the y axis:

        node:     0, 1.28
        handle:   5, 0.60
        handle:  11, 0.31
        node:    15, 0.20
        handle:  19, 0.08
        handle:  22, 0.02
        node:    37, 0.00

    The first half of the stops samples the lower segment without its end
    node, the second half samples the upper segment including both nodes,
    so the shared knot at 15 km appears once.

    """
    if n_stops < 4:
        raise ValueError("At least 4 gradient stops are required")

    halfway = n_stops // 2
    frac_low = np.arange(halfway) / halfway
    frac_high = np.linspace(0.0, 1.0, n_stops - halfway)

    alt_km = np.concatenate([bezier_cubic(0.0, 5.0, 11.0, 15.0, frac_low),
                             bezier_cubic(15.0, 19.0, 22.0, 37.0, frac_high)])
    density = np.concatenate([bezier_cubic(1.28, 0.60, 0.31, 0.20, frac_low),
                              bezier_cubic(0.20, 0.08, 0.02, 0.00, frac_high)])
    return alt_km, density


def gradient_density(stops, alt_km):
    """Interpolate the baseline gradient at the given altitudes.

    Altitudes outside the stop range take the density of the nearest end
    stop.

    """
    stop_alt, stop_density = stops
    density = np.interp(alt_km, stop_alt, stop_density)
    return _scalar_or_array(density, alt_km)


def baseline_density(window, stops, x, y):
    """Baseline density [kg/m^3] at window pixel positions."""
    alt_km, _ = to_planet_coord(window, x, y)
    return gradient_density(stops, alt_km)


def build_density_field(window, stops) -> np.ndarray:
    """Rasterize the baseline gradient over every window pixel.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    stops : tuple of ndarray
        Gradient stops from `build_baseline_gradient`.

    Returns
    -------
    field : ndarray, shape (height, width)
        Density field [kg/m^3] indexed as field[row, column].

    """
    rows, cols = np.indices((window["height"], window["width"]),
                            dtype=float)
    return np.asarray(baseline_density(window, stops, cols, rows),
                      dtype=float)


def generate_bloops(window, count: int, rng=None, *,
                    alt_exponent: float = 3.5,
                    ground_exponent: float = 1.5,
                    drift_alt_km: float = 0.5,
                    drift_ground_km: float = 10.0,
                    duration_range: Tuple[float, float] = (0.1, 0.4),
                    radius_alt_range: Tuple[float, float] = (0.2, 2.0),
                    radius_ground_range: Tuple[float, float] = (2.0, 20.0),
                    max_deviation: float = 0.1) -> List[Dict[str, float]]:
    """Generate randomized turbulence bloops.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    count : int
        Number of bloops.
    rng : numpy.random.Generator, int or None
        Random generator, or a seed for a new one.
    alt_exponent : float
        Power-law exponent biasing start altitudes toward the ground.
    ground_exponent : float
        Power-law exponent biasing start positions toward ground 0.
    drift_alt_km, drift_ground_km : float
        Largest displacement of the end position from the start position.
    duration_range : tuple of float
        Range of bloop lifetimes, in animation time (0 to 1).
    radius_alt_range, radius_ground_range : tuple of float
        Ranges of the vertical and horizontal radii [km].
    max_deviation : float
        Largest departure of the peak multiplier from 1.

    Returns
    -------
    bloops : list of dict
        Each bloop has keys 'x0', 'y0', 'x1', 'y1' (window pixels),
        't_start', 'duration', 'radius_alt_km', 'radius_ground_km' and
        'amplitude' (peak multiplier).

    Notes
    -----
    Start times are drawn from [-duration, 1] so active windows are
    scattered across the whole animation, including its first frame. The
    amplitude exponent grows from 1 at the ground to 5 at the window top,
    so low bloops have the widest amplitude spread.

    """
    if count < 0:
        raise ValueError("Bloop count must be non-negative")
    if not 0.0 <= max_deviation < 1.0:
        raise ValueError("max_deviation must lie in [0, 1)")

    rng = np.random.default_rng(rng)
    arc = window["arc_length_km"]
    top = window["altitude_km"]

    alt0 = top * rng.random(count) ** alt_exponent
    ground0 = arc * rng.random(count) ** ground_exponent
    alt1 = np.clip(alt0 + rng.uniform(-drift_alt_km, drift_alt_km, count),
                   0.0, top)
    ground1 = np.clip(ground0 + rng.uniform(-drift_ground_km,
                                            drift_ground_km, count),
                      0.0, arc)

    duration = rng.uniform(duration_range[0], duration_range[1], count)
    t_start = -duration + rng.random(count) * (1.0 + duration)

    radius_alt = rng.uniform(radius_alt_range[0], radius_alt_range[1], count)
    radius_ground = rng.uniform(radius_ground_range[0],
                                radius_ground_range[1], count)

    amp_exponent = 1.0 + 4.0 * (alt0 / top)
    deviation = max_deviation * rng.random(count) ** amp_exponent
    sign = np.where(rng.random(count) < 0.5, -1.0, 1.0)
    amplitude = 1.0 + sign * deviation

    x0, y0 = to_pixel(window, alt0, ground0)
    x1, y1 = to_pixel(window, alt1, ground1)

    bloops = []
    for i in range(count):
        bloops.append({"x0": float(x0[i]),
                       "y0": float(y0[i]),
                       "x1": float(x1[i]),
                       "y1": float(y1[i]),
                       "t_start": float(t_start[i]),
                       "duration": float(duration[i]),
                       "radius_alt_km": float(radius_alt[i]),
                       "radius_ground_km": float(radius_ground[i]),
                       "amplitude": float(amplitude[i])})

    logger.debug("Generated %d turbulence bloops", count)
    return bloops


def bloop_life(bloop, sim_time: float) -> float:
    """Fraction of the bloop lifetime elapsed at `sim_time`."""
    return (sim_time - bloop["t_start"]) / bloop["duration"]


def bloop_active(bloop, sim_time: float) -> bool:
    """Check whether a bloop perturbs the field at `sim_time`."""
    return 0.0 <= bloop_life(bloop, sim_time) <= 1.0


def bloop_position(bloop, sim_time: float) -> Tuple[float, float]:
    """Window-space centre of a bloop, moving linearly over its lifetime."""
    frac = float(np.clip(bloop_life(bloop, sim_time), 0.0, 1.0))
    x = bloop["x0"] + (bloop["x1"] - bloop["x0"]) * frac
    y = bloop["y0"] + (bloop["y1"] - bloop["y0"]) * frac
    return x, y


def bloop_multiplier(window, x, y, sim_time: float, bloop):
    """Evaluate the density multiplier of one bloop.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    x, y : float or array-like
        Pixel positions.
    sim_time : float
        Simulated animation time.
    bloop : dict
        Bloop from `generate_bloops`.

    Returns
    -------
    multiplier : float or ndarray
        1.0 outside the bloop lifetime or outside its ellipse.

    Notes
    -----
    Distances are measured in ground/altitude space with the altitude
    offset stretched by radius_ground / radius_alt, then divided by
    radius_ground. Both the temporal envelope (over life fraction) and the
    spatial falloff (over normalized distance) are raised cosines:

        m = 1 + (amplitude - 1) * envelope(t) * falloff(d)

    """
    life = bloop_life(bloop, sim_time)
    if life < 0.0 or life > 1.0:
        ones = np.ones(np.broadcast(np.asarray(x), np.asarray(y)).shape)
        return _scalar_or_array(ones, x, y)

    cx, cy = bloop_position(bloop, sim_time)
    c_alt, c_ground = to_planet_coord(window, cx, cy)
    alt, ground = to_planet_coord(window, x, y)

    r_ground = bloop["radius_ground_km"]
    stretch = r_ground / bloop["radius_alt_km"]
    dist = np.hypot(ground - c_ground, (alt - c_alt) * stretch) / r_ground

    envelope = 0.5 - 0.5 * np.cos(2.0 * np.pi * life)
    falloff = 0.5 + 0.5 * np.cos(np.pi * np.minimum(dist, 1.0))
    multiplier = 1.0 + (bloop["amplitude"] - 1.0) * envelope * falloff
    multiplier = np.where(dist > 1.0, 1.0, multiplier)
    return _scalar_or_array(multiplier, x, y)


def check_field_shape(window, field) -> None:
    """Raise ValueError unless `field` is shaped (height, width) of `window`."""
    expected = (window["height"], window["width"])
    if np.shape(field) != expected:
        raise ValueError(f"Density field shape {np.shape(field)} does not "
                         f"match the window shape {expected}")


def apply_bloop(window, field: np.ndarray, sim_time: float, bloop) -> None:
    """Multiply a bloop into the density field in place.

    Only the pixel bounding box of the bloop ellipse is visited. The box
    is widened for the tilt of the local vertical across the window and
    for the growth of ground distances with altitude.

    """
    check_field_shape(window, field)
    if not bloop_active(bloop, sim_time):
        return

    height, width = field.shape
    res = window["resolution"]
    r_ground = bloop["radius_ground_km"]
    r_alt = bloop["radius_alt_km"]
    tilt = np.sin(np.radians(window["angle_deg"] / 2.0))
    widen = window["top_km"] / window["planet_radius_km"]

    half_w = int(np.ceil(r_ground * widen * res)) + 1
    half_h = int(np.ceil((r_alt + r_ground * tilt) * res)) + 1

    cx, cy = bloop_position(bloop, sim_time)
    x_lo = max(int(np.floor(cx)) - half_w, 0)
    x_hi = min(int(np.ceil(cx)) + half_w, width - 1)
    y_lo = max(int(np.floor(cy)) - half_h, 0)
    y_hi = min(int(np.ceil(cy)) + half_h, height - 1)
    if x_lo > x_hi or y_lo > y_hi:
        return

    rows, cols = np.mgrid[y_lo:y_hi + 1, x_lo:x_hi + 1]
    field[y_lo:y_hi + 1, x_lo:x_hi + 1] *= bloop_multiplier(
        window, cols, rows, sim_time, bloop)


def apply_bloops(window, field: np.ndarray, sim_time: float, bloops) -> int:
    """Apply every bloop active at `sim_time`; return how many were."""
    check_field_shape(window, field)
    n_active = 0
    for bloop in bloops:
        if bloop_active(bloop, sim_time):
            apply_bloop(window, field, sim_time, bloop)
            n_active += 1
    return n_active


# ---------------------------------------------------------------------------
# Field sampling
# ---------------------------------------------------------------------------

def sample_field(field, x, y, mode: str = "bilinear"):
    """Interpolate the density field at fractional pixel coordinates.

    Parameters
    ----------
    field : ndarray, shape (height, width)
        Density field indexed as field[row, column].
    x, y : float or array-like
        Fractional column and row.
    mode : str
        'bilinear' interpolates along y at both bracketing columns and
        then along x; 'weighted' sums the four corners with bilinear
        weights. Default 'bilinear'.

    Returns
    -------
    density : float or ndarray
        Interpolated density; 0.0 outside [0.5, width - 0.5] x
        [0.5, height - 0.5].

    Notes
    -----
    Integer coordinates return the stored value directly. The neighbouring
    corners are clamped into the array, so near the right and bottom edges
    the sample degenerates to the edge values.

    """
    if mode not in ("bilinear", "weighted"):
        raise ValueError(f"Unknown interpolation mode {mode!r}; "
                         "expected 'bilinear' or 'weighted'.")

    field = np.asarray(field, dtype=float)
    height, width = field.shape

    x_arr = np.atleast_1d(np.asarray(x, dtype=float))
    y_arr = np.atleast_1d(np.asarray(y, dtype=float))
    x_arr, y_arr = np.broadcast_arrays(x_arr, y_arr)

    valid = ((x_arr >= 0.5) & (x_arr <= width - 0.5)
             & (y_arr >= 0.5) & (y_arr <= height - 0.5))
    xs = np.where(valid, x_arr, 0.5)
    ys = np.where(valid, y_arr, 0.5)

    x_floor = np.floor(xs)
    y_floor = np.floor(ys)
    fx = xs - x_floor
    fy = ys - y_floor

    x0 = np.clip(x_floor.astype(int), 0, width - 1)
    x1 = np.clip(x_floor.astype(int) + 1, 0, width - 1)
    y0 = np.clip(y_floor.astype(int), 0, height - 1)
    y1 = np.clip(y_floor.astype(int) + 1, 0, height - 1)

    f00 = field[y0, x0]
    f10 = field[y0, x1]
    f01 = field[y1, x0]
    f11 = field[y1, x1]

    if mode == "weighted":
        value = (f00 * (1.0 - fx) * (1.0 - fy)
                 + f10 * fx * (1.0 - fy)
                 + f01 * (1.0 - fx) * fy
                 + f11 * fx * fy)
    else:
        left = f00 + (f01 - f00) * fy
        right = f10 + (f11 - f10) * fy
        value = left + (right - left) * fx

    exact = (fx == 0.0) & (fy == 0.0)
    value = np.where(exact, f00, value)
    density = np.where(valid, value, 0.0)

    if np.ndim(x) == 0 and np.ndim(y) == 0:
        return float(density[0])
    return density


# ---------------------------------------------------------------------------
# Surface search
# ---------------------------------------------------------------------------

def _wrap180(angle_deg):
    """Wrap angles into (-180, 180]."""
    wrapped = np.mod(angle_deg, 360.0)
    return np.where(wrapped > 180.0, wrapped - 360.0, wrapped)


def build_search_units(field, x: float, y: float, angles,
                       ref_density: float, *,
                       probe_radius: float = 1.0,
                       mode: str = "bilinear") -> Tuple[np.ndarray,
                                                        np.ndarray]:
    """Score probe angles around a point for the surface search.

    Parameters
    ----------
    field : ndarray
        Density field.
    x, y : float
        Pixel position of the probe centre.
    angles : array-like
        Probe angles [deg]. Each probe angle is the thin-side normal.
    ref_density : float
        Density owned by the ray before the crossing.
    probe_radius : float
        Distance of the four samples from the centre [pixels].
    mode : str
        Interpolation mode for `sample_field`.

    Returns
    -------
    angles : ndarray
        Probe angles wrapped into [0, 360).
    scores : ndarray
        Score of each probe.

    Notes
    -----
    For probe angle a, samples are taken along a (thin normal), a + 180
    (thick normal), a + 90 and a - 90 (tangents):

        score = (ref - n_thin) + (n_thick - ref)
                - |ref - t_0| - |ref - t_1|

    High scores mark a density increase across the probe axis with little
    change along the tangent line.

    """
    angles = np.mod(np.atleast_1d(np.asarray(angles, dtype=float)), 360.0)
    offsets = np.radians(np.stack([angles,
                                   angles + 180.0,
                                   angles + 90.0,
                                   angles - 90.0]))
    px = x + probe_radius * np.cos(offsets)
    py = y - probe_radius * np.sin(offsets)
    samples = sample_field(field, px, py, mode)

    scores = ((ref_density - samples[0]) + (samples[1] - ref_density)
              - np.abs(ref_density - samples[2])
              - np.abs(ref_density - samples[3]))
    return angles, scores


def _search_unit(angle: float, score: float) -> Dict[str, Any]:
    angle = float(np.mod(angle, 360.0))
    return {"angle": angle,
            "score": float(score),
            "normal": (angle, float(np.mod(angle + 180.0, 360.0))),
            "tangent": (float(np.mod(angle + 90.0, 360.0)),
                        float(np.mod(angle - 90.0, 360.0)))}


def build_search_unit(field, x: float, y: float, angle: float,
                      ref_density: float, *,
                      probe_radius: float = 1.0,
                      mode: str = "bilinear") -> Dict[str, Any]:
    """Build one scored search unit.

    Returns
    -------
    unit : dict
        Keys 'angle', 'score', 'normal' (thin side, thick side) and
        'tangent' (angle + 90, angle - 90), angles in [0, 360) degrees.

    """
    angles, scores = build_search_units(field, x, y, [angle], ref_density,
                                        probe_radius=probe_radius, mode=mode)
    return _search_unit(angles[0], scores[0])


def find_surface(field, x: float, y: float, ref_density: float, *,
                 offset_deg: float = 0.0,
                 n_probes: int = 100,
                 n_iterations: int = 100,
                 probe_radius: float = 1.0,
                 mode: str = "bilinear") -> Dict[str, Any]:
    """Locate the local iso-density surface around a point.

    Parameters
    ----------
    field : ndarray
        Density field.
    x, y : float
        Pixel position of the ray.
    ref_density : float
        Density owned by the ray before the crossing.
    offset_deg : float
        Angle of the first probe, normally the local vertical. Default 0.
    n_probes : int
        Number of evenly spaced scatter probes. Default 100.
    n_iterations : int
        Number of refinement iterations. Default 100.
    probe_radius : float
        Sample distance from the ray position [pixels]. Default 1.
    mode : str
        Interpolation mode for `sample_field`.

    Returns
    -------
    surface : dict
        Best-scoring search unit (see `build_search_unit`).

    Notes
    -----
    Scatter phase: all probes are scored in one batch and the best one
    (lowest index on ties) is kept together with its clockwise and
    counter-clockwise neighbours.

    Refine phase: each iteration scores the angular midpoints between the
    best unit and each neighbour.
      - A midpoint scoring strictly higher than the best becomes the best
        and the old best becomes the neighbour on that side.
      - If both midpoints improve, the higher one wins (counter-clockwise
        on equal scores).
      - Otherwise each neighbour moves in to its midpoint only when the
        midpoint scores strictly higher than that neighbour.
    Ties always keep the existing unit. The loop always runs `n_iterations` times; the result is a best
    effort and its quality is never reported.

    """
    if n_probes < 3:
        raise ValueError("At least 3 probes are required")
    if n_iterations < 0:
        raise ValueError("n_iterations must be non-negative")

    spacing = 360.0 / n_probes
    angles, scores = build_search_units(
        field, x, y, offset_deg + spacing * np.arange(n_probes),
        ref_density, probe_radius=probe_radius, mode=mode)

    i_best = int(np.argmax(scores))
    i_cw = (i_best - 1) % n_probes
    i_ccw = (i_best + 1) % n_probes
    best = _search_unit(angles[i_best], scores[i_best])
    cw = _search_unit(angles[i_cw], scores[i_cw])
    ccw = _search_unit(angles[i_ccw], scores[i_ccw])

    for _ in range(n_iterations):
        a_ccw = best["angle"] + 0.5 * float(_wrap180(ccw["angle"]
                                                     - best["angle"]))
        a_cw = best["angle"] + 0.5 * float(_wrap180(cw["angle"]
                                                    - best["angle"]))
        mid_angles, mid_scores = build_search_units(
            field, x, y, [a_ccw, a_cw], ref_density,
            probe_radius=probe_radius, mode=mode)
        mid_ccw = _search_unit(mid_angles[0], mid_scores[0])
        mid_cw = _search_unit(mid_angles[1], mid_scores[1])

        better_ccw = mid_ccw["score"] > best["score"]
        better_cw = mid_cw["score"] > best["score"]
        if better_ccw and better_cw:
            if mid_cw["score"] > mid_ccw["score"]:
                better_ccw = False
            else:
                better_cw = False

        if better_ccw:
            cw, best = best, mid_ccw
        elif better_cw:
            ccw, best = best, mid_cw
        else:
            if mid_ccw["score"] > ccw["score"]:
                ccw = mid_ccw
            if mid_cw["score"] > cw["score"]:
                cw = mid_cw

    return best


# ---------------------------------------------------------------------------
# Refraction
# ---------------------------------------------------------------------------

def refractive_index(density, K_GD: Optional[float] = None):
    """Gladstone-Dale refractive index, n = 1 + K_GD * rho."""
    if K_GD is None:
        _, _, K_GD = constants()
    return 1.0 + np.asarray(density, dtype=float) * K_GD


def snell_sine(incident_deg: float, density_in: float, density_out: float,
               K_GD: Optional[float] = None) -> float:
    """Sine of the refracted angle, (n1 / n2) * sin(incident)."""
    n1 = refractive_index(density_in, K_GD)
    n2 = refractive_index(density_out, K_GD)
    return float(n1 / n2 * np.sin(np.radians(incident_deg)))


def snell_refraction(incident_deg: float, density_in: float,
                     density_out: float,
                     K_GD: Optional[float] = None) -> float:
    """Refract an angle of incidence across a density boundary.

    Parameters
    ----------
    incident_deg : float
        Angle between the reversed travel direction and the incoming-side
        normal [deg], signed.
    density_in : float
        Density on the incoming side [kg/m^3].
    density_out : float
        Density on the outgoing side [kg/m^3].
    K_GD : float or None
        Gladstone-Dale constant. If None, defaults to `constants()`.

    Returns
    -------
    refracted_deg : float
        Angle from the outgoing-side normal [deg].

    Notes
    -----
    When |(n1 / n2) sin(incident)| > 1 there is no transmitted ray and the
    result is 180 - incident, which sends the ray back to the incoming
    side. This approximates total internal reflection rather than applying
    the full reflection law.

    """
    s = snell_sine(incident_deg, density_in, density_out, K_GD)
    if abs(s) > 1.0:
        return 180.0 - incident_deg
    return float(np.degrees(np.arcsin(s)))


def _split_normals(surface, dx: float, dy: float) -> Tuple[float, float]:
    """Order the surface normals as (incoming, outgoing).

    The incoming normal lies on the same side of the tangent line as the
    previous node, at pixel offset (dx, dy) from the current one.

    """
    t = np.radians(surface["tangent"][0])
    n = np.radians(surface["normal"][0])
    tx, tz = np.cos(t), np.sin(t)
    side_prev = np.sign(tx * (-dy) - tz * dx)
    side_normal = np.sign(tx * np.sin(n) - tz * np.cos(n))
    if side_prev == side_normal:
        return surface["normal"][0], surface["normal"][1]
    return surface["normal"][1], surface["normal"][0]


def init_ray(window, field, alt_km: float, ground_km: float,
             direction_deg: float, *,
             mode: str = "bilinear") -> Dict[str, Any]:
    """Seed a ray at a planet coordinate.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    field : ndarray
        Density field.
    alt_km, ground_km : float
        Launch altitude and ground distance [km].
    direction_deg : float
        Launch direction in the window plane [deg].
    mode : str
        Interpolation mode for `sample_field`.

    Returns
    -------
    ray : dict
        Ray state with keys 'x', 'y' (node lists), 'direction_deg',
        'density', 'status', 'n_refractions', 'n_reflections'.

    """
    x0, y0 = to_pixel(window, alt_km, ground_km)
    status = "active" if in_window(window, x0, y0) else "exit"
    # Launches in the border strip take the nearest sampled density
    height, width = np.shape(field)
    xs = float(np.clip(x0, 0.5, width - 0.5))
    ys = float(np.clip(y0, 0.5, height - 0.5))
    return {"x": [float(x0)],
            "y": [float(y0)],
            "direction_deg": float(np.mod(direction_deg, 360.0)),
            "density": sample_field(field, xs, ys, mode),
            "status": status,
            "n_refractions": 0,
            "n_reflections": 0}


def step_ray(window, field, ray, *,
             step_px: float = 1.0,
             tolerance: float = 1e-10,
             n_probes: int = 100,
             n_iterations: int = 100,
             probe_radius: float = 1.0,
             mode: str = "bilinear",
             K_GD: Optional[float] = None) -> Dict[str, Any]:
    """Advance a ray by one node and refract it at density changes.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    field : ndarray
        Density field.
    ray : dict
        Ray state from `init_ray`; updated in place.
    step_px : float
        Step length [pixels]. Default 1.
    tolerance : float
        Densities closer than this are treated as equal. Default 1e-10.
    n_probes, n_iterations, probe_radius : int, int, float
        Surface search effort, see `find_surface`.
    mode : str
        Interpolation mode for `sample_field`.
    K_GD : float or None
        Gladstone-Dale constant. If None, defaults to `constants()`.

    Returns
    -------
    ray : dict
        The same ray state with one more node.

    Notes
    -----
    The new node is always appended. If it falls outside the window the
    status becomes 'exit' and no refraction is computed. Nodes inside the
    window but within half a pixel of the field border are not refracted
    and keep the previous density. Otherwise, when
    the density changed, the surface is located at the new node using the
    previous density as reference and

        incident  = direction + 180 - normal_in
        direction = refracted + normal_out

    """
    x_prev, y_prev = ray["x"][-1], ray["y"][-1]
    direction = ray["direction_deg"]

    heading = polar_to_cartesian([0.0, direction, step_px])
    x_new = x_prev + float(heading[0])
    y_new = y_prev - float(heading[2])

    ray["x"].append(x_new)
    ray["y"].append(y_new)

    if not in_window(window, x_new, y_new):
        ray["status"] = "exit"
        return ray

    # Window edge strip where the sampler has no data
    height, width = np.shape(field)
    if not (0.5 <= x_new <= width - 0.5 and 0.5 <= y_new <= height - 0.5):
        return ray

    density_prev = ray["density"]
    density_new = sample_field(field, x_new, y_new, mode)
    ray["density"] = density_new

    if abs(density_new - density_prev) <= tolerance:
        return ray

    surface = find_surface(field, x_new, y_new, density_prev,
                           offset_deg=local_vertical(window, x_new, y_new),
                           n_probes=n_probes,
                           n_iterations=n_iterations,
                           probe_radius=probe_radius,
                           mode=mode)
    normal_in, normal_out = _split_normals(surface,
                                           x_prev - x_new,
                                           y_prev - y_new)

    incident = float(_wrap180(direction + 180.0 - normal_in))
    refracted = snell_refraction(incident, density_prev, density_new, K_GD)
    if abs(snell_sine(incident, density_prev, density_new, K_GD)) > 1.0:
        ray["n_reflections"] += 1

    ray["direction_deg"] = float(np.mod(refracted + normal_out, 360.0))
    ray["n_refractions"] += 1
    return ray


def trace_ray(window, field, alt_km: float, ground_km: float,
              direction_deg: float, *,
              max_nodes: int = 16383,
              step_px: float = 1.0,
              tolerance: float = 1e-10,
              n_probes: int = 100,
              n_iterations: int = 100,
              probe_radius: float = 1.0,
              mode: str = "bilinear",
              K_GD: Optional[float] = None) -> Dict[str, Any]:
    """Trace a ray through the density field until it leaves the window.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    field : ndarray
        Density field.
    alt_km, ground_km : float
        Launch altitude and ground distance [km].
    direction_deg : float
        Launch direction in the window plane [deg]; see `local_direction`
        to convert an elevation above the local horizon.
    max_nodes : int
        Hard cap on the number of nodes. Default 16383.
    step_px, tolerance, n_probes, n_iterations, probe_radius, mode, K_GD
        Passed to `step_ray`.

    Returns
    -------
    result : dict

    Notes
    -----
    The return dictionary has the keys:
    'x', 'y' : ndarray, node pixel positions in traversal order
    'alt_km', 'ground_km' : ndarray, node planet coordinates
    'direction_deg' : float, final direction
    'density' : float, density at the last node
    'status' : str, 'exit' or 'max_nodes'
    'n_refractions', 'n_reflections' : int

    """
    if max_nodes < 1:
        raise ValueError("max_nodes must be at least 1")
    check_field_shape(window, field)

    ray = init_ray(window, field, alt_km, ground_km, direction_deg,
                   mode=mode)
    while ray["status"] == "active":
        if len(ray["x"]) >= max_nodes:
            ray["status"] = "max_nodes"
            break
        step_ray(window, field, ray,
                 step_px=step_px,
                 tolerance=tolerance,
                 n_probes=n_probes,
                 n_iterations=n_iterations,
                 probe_radius=probe_radius,
                 mode=mode,
                 K_GD=K_GD)

    x = np.asarray(ray["x"], dtype=float)
    y = np.asarray(ray["y"], dtype=float)
    alt, ground = to_planet_coord(window, x, y)

    logger.debug("Ray finished with status %s after %d nodes "
                 "(%d refractions, %d reflections)", ray["status"], x.size,
                 ray["n_refractions"], ray["n_reflections"])

    return {"x": x,
            "y": y,
            "alt_km": alt,
            "ground_km": ground,
            "direction_deg": ray["direction_deg"],
            "density": ray["density"],
            "status": ray["status"],
            "n_refractions": ray["n_refractions"],
            "n_reflections": ray["n_reflections"]}
