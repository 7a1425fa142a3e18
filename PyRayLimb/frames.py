#!/usr/bin/env python
# --------------------------------------------------------
# Distribution statement A. Approved for public release.
# Distribution is unlimited.
# This work was supported by the Office of Naval Research.
# --------------------------------------------------------
"""Per-frame simulation and animation output for PyRayLimb.

"""

# Standard library
import os

# Third-party
import numpy as np

# Typing
from typing import Any
from typing import Dict
from typing import List

# Local
from PyRayLimb import logger
from PyRayLimb.library import apply_bloops
from PyRayLimb.library import build_baseline_gradient
from PyRayLimb.library import build_density_field
from PyRayLimb.library import generate_bloops
from PyRayLimb.library import local_direction
from PyRayLimb.library import to_pixel
from PyRayLimb.library import trace_ray
from PyRayLimb.library import window_geometry
from PyRayLimb.render import contour_levels
from PyRayLimb.render import render_frame
from PyRayLimb.render import save_frame
from PyRayLimb.render import save_to_file


def frame_times(n_frames: int) -> np.ndarray:
    """Simulated times of the frames, evenly spaced over [0, 1]."""
    if n_frames < 1:
        raise ValueError("At least one frame is required")
    if n_frames == 1:
        return np.zeros(1)
    return np.linspace(0.0, 1.0, n_frames)


def simulate_frame(window, stops, bloops, sim_time: float,
                   alt_km: float, ground_km: float, direction_deg: float,
                   **trace_kwargs) -> Dict[str, Any]:
    """Build the density field for one frame and trace the ray through it.

    Parameters
    ----------
    window : dict
        Window description from `window_geometry`.
    stops : tuple of ndarray
        Gradient stops from `build_baseline_gradient`.
    bloops : list of dict
        Turbulence bloops from `generate_bloops`.
    sim_time : float
        Simulated time of the frame.
    alt_km, ground_km : float
        Ray launch position [km].
    direction_deg : float
        Ray launch direction in the window plane [deg].
    **trace_kwargs
        Passed to `trace_ray`.

    Returns
    -------
    frame : dict
        Keys 'time', 'field', 'ray' and 'n_bloops' (bloops applied).

    """
    field = build_density_field(window, stops)
    n_active = apply_bloops(window, field, sim_time, bloops)
    ray = trace_ray(window, field, alt_km, ground_km, direction_deg,
                    **trace_kwargs)
    return {"time": float(sim_time),
            "field": field,
            "ray": ray,
            "n_bloops": n_active}


def run_animation(output_dir: str, *,
                  n_frames: int = 1,
                  arc_length_km: float = 400.,
                  altitude_km: float = 35.,
                  resolution: float = 10.,
                  n_bloops: int = 200,
                  seed: int = 0,
                  alt_km: float = 2.0,
                  ground_km: float = 1.0,
                  elevation_deg: float = 0.0,
                  n_stops: int = 100,
                  n_contours: int = 20,
                  save_rays: bool = False,
                  **trace_kwargs) -> List[str]:
    """Render an animation of a ray crossing a turbulent limb atmosphere.

    Parameters
    ----------
    output_dir : str
        Directory for the frames; created if missing.
    n_frames : int
        Number of frames. Default 1.
    arc_length_km, altitude_km, resolution : float
        Window size [km] and pixels per km, see `window_geometry`.
    n_bloops : int
        Number of turbulence bloops over the animation. Default 200.
    seed : int
        Random seed for bloop generation. Default 0.
    alt_km, ground_km : float
        Ray launch position [km]. Default 2 km altitude at ground 1 km.
    elevation_deg : float
        Launch elevation above the local horizon [deg]. Default 0.
    n_stops : int
        Number of baseline gradient stops. Default 100.
    n_contours : int
        Number of contour levels drawn. Default 20.
    save_rays : bool
        Also pickle each frame's ray to 'ray_XXXX.p'. Default False.
    **trace_kwargs
        Passed to `trace_ray` (step size, surface search effort,
        tolerance, interpolation mode, node cap).

    Returns
    -------
    paths : list of str
        Paths of the written PNG frames, in frame order.

    """
    window = window_geometry(arc_length_km, altitude_km, resolution)
    stops = build_baseline_gradient(n_stops)
    bloops = generate_bloops(window, n_bloops, np.random.default_rng(seed))

    x0, y0 = to_pixel(window, alt_km, ground_km)
    direction_deg = local_direction(window, x0, y0, elevation_deg)
    levels = contour_levels(n_contours)

    logger.info("Window %d x %d pixels, %.4f degrees of arc",
                window["width"], window["height"], window["angle_deg"])

    os.makedirs(output_dir, exist_ok=True)

    times = frame_times(n_frames)
    paths = []
    for i, sim_time in enumerate(times):
        frame = simulate_frame(window, stops, bloops, sim_time,
                               alt_km, ground_km, direction_deg,
                               **trace_kwargs)

        image = render_frame(window, frame["field"], frame["ray"],
                             levels=levels)
        path = os.path.join(output_dir, f"frame_{i:04d}.png")
        save_frame(image, path)
        paths.append(path)

        if save_rays:
            save_to_file(frame["ray"],
                         os.path.join(output_dir, f"ray_{i:04d}.p"))

        logger.info("Frame %d/%d: %d nodes, %d bloops active, status %s",
                    i + 1, times.size, frame["ray"]["x"].size,
                    frame["n_bloops"], frame["ray"]["status"])
    return paths
