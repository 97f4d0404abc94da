"""CLI entry point to run the MPM snow/sand simulation."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add parent directory to path to find mpm_engine module
sys.path.insert(0, str(Path(__file__).parent.parent))

import taichi as ti
from tqdm import tqdm

from mpm_engine import WorldContainer
from mpm_engine.physics_world.solvers.mpm import MPMError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the MPM snow/sand simulation")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config/snow_drop.yaml"),
        help="Path to the scene configuration YAML file.",
    )
    parser.add_argument("--steps", type=int, default=None, help="Optional override for number of frames")
    parser.add_argument(
        "--cpu",
        action="store_true",
        help="Use the Taichi CPU backend instead of GPU",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Maximum number of CPU worker threads (CPU backend only)",
    )
    parser.add_argument(
        "--serialize",
        action="store_true",
        help="Run particle passes on a single thread (deterministic accumulation order)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable Taichi debug mode (bounds and assertion checks) and periodic statistics",
    )
    return parser.parse_args()


def init_taichi(args: argparse.Namespace) -> None:
    os.environ.setdefault("TI_LOG_LEVEL", "error")  # Suppress Taichi logs
    # fast math would let the compiler assume NaN never appears
    options = {"debug": args.debug, "fast_math": False}
    if args.cpu or args.threads is not None:
        if args.threads is not None:
            options["cpu_max_num_threads"] = args.threads
        ti.init(arch=ti.cpu, **options)
        print("[simulate] Using MPM solver (CPU backend)")
        return
    try:
        ti.init(arch=ti.gpu, **options)
        print("[simulate] Using MPM solver (GPU backend)")
    except RuntimeError as exc:
        print(f"[simulate] GPU init failed: {exc}, falling back to CPU")
        ti.init(arch=ti.cpu, **options)


def main() -> int:
    args = parse_args()
    init_taichi(args)

    container = WorldContainer.from_config_file(
        args.config,
        serialize=args.serialize,
        debug_interval=100 if args.debug else 0,
    )

    steps = args.steps if args.steps is not None else container.config.simulation.total_steps
    try:
        for _ in tqdm(range(steps), desc="Simulating"):
            container.step()
    except MPMError as exc:
        print(f"[simulate] Simulation aborted: {exc}")
        for key, value in exc.diagnostics.items():
            print(f"  {key}: {value}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
