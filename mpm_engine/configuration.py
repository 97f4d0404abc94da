"""Scene configuration dataclasses and loader utilities."""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, List, Mapping, Sequence

from .physics_world.math_utils import vec3, vec3i
from .physics_world.solvers.mpm.mpm_materials import MaterialParameters, material_from_config


_YAML_MODULE: ModuleType | None = None

DENSITY_KINDS = ("constant", "box", "sphere", "grid")
BOUNDARY_KINDS = ("plane", "box", "sphere", "grid")


def _load_yaml_module() -> ModuleType:
    global _YAML_MODULE
    if _YAML_MODULE is None:
        try:
            _YAML_MODULE = import_module("yaml")
        except ModuleNotFoundError as exc:  # pragma: no cover - dependency hint
            raise ImportError(
                "PyYAML is required to load scene configurations. Install it via 'pip install pyyaml'."
            ) from exc
    return _YAML_MODULE


@dataclass
class SimulationConfig:
    resolution: Sequence[int]  # grid cells per axis
    delta_t: float  # seconds (s)
    total_steps: int
    gravity: Sequence[float] = (0.0, -9.8, 0.0)  # cells per second squared
    apic: bool = True
    substeps_per_frame: int = 1
    max_particles: int = 500000


@dataclass
class DensityConfig:
    """Particles per cell over normalized [0, 1]^3 coordinates."""

    kind: str = "constant"
    value: float = 1.0
    lower: Sequence[float] = (0.0, 0.0, 0.0)
    upper: Sequence[float] = (1.0, 1.0, 1.0)
    center: Sequence[float] = (0.5, 0.5, 0.5)
    radius: float = 0.25
    path: Path | None = None  # .npy volume for kind == "grid"


@dataclass
class ParticleBatchConfig:
    material: MaterialParameters
    density: DensityConfig
    compression: float = 1.0
    initial_velocity: Sequence[float] = (0.0, 0.0, 0.0)  # cells per second
    mass: float = 1.0
    volume: float = 1.0


@dataclass
class BoundaryConfig:
    kind: str
    friction: float = 0.0  # negative means sticky
    velocity: Sequence[float] = (0.0, 0.0, 0.0)  # cells per second
    point: Sequence[float] = (0.0, 0.0, 0.0)
    normal: Sequence[float] = (0.0, 1.0, 0.0)
    lower: Sequence[float] = (0.0, 0.0, 0.0)
    upper: Sequence[float] = (1.0, 1.0, 1.0)
    center: Sequence[float] = (0.0, 0.0, 0.0)
    radius: float = 1.0
    inside: bool = False
    path: Path | None = None  # .npy signed distance (or occupancy) volume
    occupancy: bool = False


@dataclass
class ExportConfig:
    output_root: Path
    particle_subdir: str = "particles"
    export_every: int = 1

    def particle_dir(self) -> Path:
        return self.output_root / self.particle_subdir


@dataclass
class SceneConfig:
    scene_name: str
    simulation: SimulationConfig
    particle_batches: List[ParticleBatchConfig] = field(default_factory=list)
    boundary: BoundaryConfig | None = None
    export: ExportConfig | None = None
    seed: int = 0


def _coerce_path(base_dir: Path, path_value: str | Path) -> Path:
    path = Path(path_value)
    return path if path.is_absolute() else (base_dir / path)


def _require(mapping: Mapping[str, Any], key: str, section: str) -> Any:
    if key not in mapping:
        raise ValueError(f"Missing required key '{section}.{key}'")
    return mapping[key]


def _parse_simulation(raw: Mapping[str, Any]) -> SimulationConfig:
    simulation = SimulationConfig(
        resolution=vec3i(_require(raw, "resolution", "simulation")),
        delta_t=float(_require(raw, "delta_t", "simulation")),
        total_steps=int(_require(raw, "total_steps", "simulation")),
        gravity=vec3(raw.get("gravity", (0.0, -9.8, 0.0))),
        apic=bool(raw.get("apic", True)),
        substeps_per_frame=int(raw.get("substeps_per_frame", 1)),
        max_particles=int(raw.get("max_particles", 500000)),
    )
    if min(simulation.resolution) < 4:
        raise ValueError(f"'simulation.resolution' must be at least 4 per axis, got {simulation.resolution}")
    if simulation.delta_t <= 0.0:
        raise ValueError(f"'simulation.delta_t' must be positive, got {simulation.delta_t}")
    if simulation.total_steps < 0:
        raise ValueError(f"'simulation.total_steps' must be non-negative, got {simulation.total_steps}")
    if simulation.substeps_per_frame < 1:
        raise ValueError(f"'simulation.substeps_per_frame' must be >= 1, got {simulation.substeps_per_frame}")
    return simulation


def _parse_density(raw: Mapping[str, Any] | float | None, base_dir: Path) -> DensityConfig:
    if raw is None:
        return DensityConfig()
    if not isinstance(raw, Mapping):
        raw = {"value": raw}
    kind = str(raw.get("kind", "constant")).lower()
    if kind not in DENSITY_KINDS:
        raise ValueError(f"Unknown 'density.kind' '{kind}', expected one of {DENSITY_KINDS}")
    density = DensityConfig(
        kind=kind,
        value=float(raw.get("value", 1.0)),
        lower=vec3(raw.get("lower", (0.0, 0.0, 0.0))),
        upper=vec3(raw.get("upper", (1.0, 1.0, 1.0))),
        center=vec3(raw.get("center", (0.5, 0.5, 0.5))),
        radius=float(raw.get("radius", 0.25)),
        path=_coerce_path(base_dir, raw["path"]) if raw.get("path") else None,
    )
    if kind == "grid" and density.path is None:
        raise ValueError("'density.path' is required for grid densities")
    if density.value < 0.0:
        raise ValueError(f"'density.value' must be non-negative, got {density.value}")
    return density


def _parse_batch(raw: Mapping[str, Any], base_dir: Path) -> ParticleBatchConfig:
    batch = ParticleBatchConfig(
        material=material_from_config(raw),
        density=_parse_density(raw.get("density"), base_dir),
        compression=float(raw.get("compression", 1.0)),
        initial_velocity=vec3(raw.get("initial_velocity", (0.0, 0.0, 0.0))),
        mass=float(raw.get("mass", 1.0)),
        volume=float(raw.get("volume", 1.0)),
    )
    if batch.compression <= 0.0:
        raise ValueError(f"'particle_batches.compression' must be positive, got {batch.compression}")
    if batch.mass <= 0.0:
        raise ValueError(f"'particle_batches.mass' must be positive, got {batch.mass}")
    return batch


def _parse_boundary(raw: Mapping[str, Any], base_dir: Path) -> BoundaryConfig:
    kind = str(_require(raw, "kind", "boundary")).lower()
    if kind not in BOUNDARY_KINDS:
        raise ValueError(f"Unknown 'boundary.kind' '{kind}', expected one of {BOUNDARY_KINDS}")
    boundary = BoundaryConfig(
        kind=kind,
        friction=float(raw.get("friction", 0.0)),
        velocity=vec3(raw.get("velocity", (0.0, 0.0, 0.0))),
        point=vec3(raw.get("point", (0.0, 0.0, 0.0))),
        normal=vec3(raw.get("normal", (0.0, 1.0, 0.0))),
        lower=vec3(raw.get("lower", (0.0, 0.0, 0.0))),
        upper=vec3(raw.get("upper", (1.0, 1.0, 1.0))),
        center=vec3(raw.get("center", (0.0, 0.0, 0.0))),
        radius=float(raw.get("radius", 1.0)),
        inside=bool(raw.get("inside", False)),
        path=_coerce_path(base_dir, raw["path"]) if raw.get("path") else None,
        occupancy=bool(raw.get("occupancy", False)),
    )
    if kind == "grid" and boundary.path is None:
        raise ValueError("'boundary.path' is required for grid boundaries")
    return boundary


def parse_scene_config(raw: Mapping[str, Any], base_dir: Path, default_name: str = "scene") -> SceneConfig:
    """Build a SceneConfig from an already-parsed mapping."""
    if not raw or "simulation" not in raw:
        raise ValueError("Missing required section 'simulation'")

    simulation = _parse_simulation(raw["simulation"])

    batches_raw = raw.get("particle_batches") or []
    if not batches_raw:
        print("Warning: No particle batches found, the simulation will only advance its clock.")
    particle_batches = [_parse_batch(entry, base_dir) for entry in batches_raw]

    boundary = _parse_boundary(raw["boundary"], base_dir) if raw.get("boundary") else None

    export_cfg = raw.get("export")
    export = None
    if export_cfg:
        export = ExportConfig(
            output_root=_coerce_path(base_dir, _require(export_cfg, "output_root", "export")),
            particle_subdir=export_cfg.get("particle_subdir", "particles"),
            export_every=int(export_cfg.get("export_every", 1)),
        )
        if export.export_every < 1:
            raise ValueError(f"'export.export_every' must be >= 1, got {export.export_every}")

    return SceneConfig(
        scene_name=raw.get("scene_name", default_name),
        simulation=simulation,
        particle_batches=particle_batches,
        boundary=boundary,
        export=export,
        seed=int(raw.get("seed", 0)),
    )


def load_scene_config(config_path: str | Path) -> SceneConfig:
    """Load a scene configuration from YAML."""
    path = Path(config_path).expanduser().resolve()
    with path.open("r", encoding="utf-8") as handle:
        yaml_module = _load_yaml_module()
        raw = yaml_module.safe_load(handle)

    return parse_scene_config(raw, path.parent, default_name=path.stem)
