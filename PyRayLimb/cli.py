"""
Command-line interface for limb refraction animations.

Usage:
    # Single frame with default window and turbulence
    pyraylimb -o frames

    # 60-frame animation, coarser window, pickled ray paths
    pyraylimb -o frames --frames 60 --resolution 4 --save-rays

    # Calm atmosphere, weighted-average sampling
    pyraylimb -o calm --bloops 0 --mode weighted
"""
import argparse
import logging
import sys

from PyRayLimb import logger
from PyRayLimb.frames import run_animation


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Trace a light ray through a turbulent planetary limb",
    )
    parser.add_argument(
        '-o', '--output', required=True,
        help="Output directory for PNG frames",
    )
    parser.add_argument(
        '--frames', type=int, default=1,
        help="Number of frames (default: 1)",
    )
    parser.add_argument(
        '-v', '--verbose', action='store_true',
        help="Log per-ray details",
    )

    window = parser.add_argument_group('window')
    window.add_argument('--arc-length', type=float, default=400.0,
                        help="Ground arc length in km (default: 400)")
    window.add_argument('--altitude', type=float, default=35.0,
                        help="Altitude extent in km (default: 35)")
    window.add_argument('--resolution', type=float, default=10.0,
                        help="Pixels per km (default: 10)")

    atmos = parser.add_argument_group('atmosphere')
    atmos.add_argument('--bloops', type=int, default=200,
                       help="Number of turbulence bloops (default: 200)")
    atmos.add_argument('--seed', type=int, default=0,
                       help="Random seed (default: 0)")
    atmos.add_argument('--contours', type=int, default=20,
                       help="Number of contour levels (default: 20)")

    ray = parser.add_argument_group('ray')
    ray.add_argument('--launch-altitude', type=float, default=2.0,
                     help="Launch altitude in km (default: 2)")
    ray.add_argument('--launch-ground', type=float, default=1.0,
                     help="Launch ground distance in km (default: 1)")
    ray.add_argument('--elevation', type=float, default=0.0,
                     help="Launch elevation above local horizon in degrees")
    ray.add_argument('--mode', choices=('bilinear', 'weighted'),
                     default='bilinear', help="Field interpolation mode")
    ray.add_argument('--step', type=float, default=1.0,
                     help="Ray step in pixels (default: 1)")
    ray.add_argument('--probes', type=int, default=100,
                     help="Surface search probes (default: 100)")
    ray.add_argument('--iterations', type=int, default=100,
                     help="Surface search refinements (default: 100)")
    ray.add_argument('--tolerance', type=float, default=1e-10,
                     help="Density comparison tolerance (default: 1e-10)")
    ray.add_argument('--max-nodes', type=int, default=16383,
                     help="Maximum ray nodes (default: 16383)")
    ray.add_argument('--save-rays', action='store_true',
                     help="Pickle each frame's ray path")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(message)s',
    )

    try:
        paths = run_animation(
            args.output,
            n_frames=args.frames,
            arc_length_km=args.arc_length,
            altitude_km=args.altitude,
            resolution=args.resolution,
            n_bloops=args.bloops,
            seed=args.seed,
            alt_km=args.launch_altitude,
            ground_km=args.launch_ground,
            elevation_deg=args.elevation,
            n_contours=args.contours,
            save_rays=args.save_rays,
            mode=args.mode,
            step_px=args.step,
            n_probes=args.probes,
            n_iterations=args.iterations,
            tolerance=args.tolerance,
            max_nodes=args.max_nodes,
        )
    except MemoryError:
        logger.error("Out of memory while building frames; aborting run")
        return 1
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    print(f"Wrote {len(paths)} frame(s) to {args.output}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
