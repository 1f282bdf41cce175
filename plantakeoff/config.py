"""
Pipeline configuration.
All thresholds of the tiled analysis are configuration; the values below are
empirically tuned defaults.
"""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from loguru import logger

from .core.errors import InvalidConfiguration
from .core.measurement import DEFAULT_METHODS
from .core.rules import DimensionRule, default_rules
from .core.types import MeasurementKind


@dataclass
class TilingConfig:
    tile_size: int = 672  # llava input resolution
    overlap: int = 64


@dataclass
class DispatchConfig:
    max_concurrent_tiles: int = 8
    tile_timeout: Optional[float] = 120.0


@dataclass
class MergeConfig:
    iou_threshold: float = 0.3
    bucket_fraction: float = 0.1  # bucket size as a fraction of the tile size
    corroboration_bonus: float = 0.15


@dataclass
class CalibrationConfig:
    tolerance: float = 0.05
    min_confidence: float = 0.5
    fallback_scale: float = 100.0
    fallback_confidence: float = 0.2
    disagreement_penalty: float = 0.7
    reference_sizes_mm: Dict[str, float] = field(default_factory=lambda: {"door": 885.0})


@dataclass
class ValidationConfig:
    max_extent_fraction: float = 0.8
    min_size_px: float = 5.0


@dataclass
class MeasurementConfig:
    methods: Dict[str, str] = field(default_factory=lambda: {k: v.value for k, v in DEFAULT_METHODS.items()})
    default_depth_mm: Dict[str, float] = field(default_factory=lambda: {"slab": 200.0})

    def method_kinds(self) -> Dict[str, MeasurementKind]:
        return {element_type: MeasurementKind(kind) for element_type, kind in self.methods.items()}


@dataclass
class InferenceConfig:
    host: str = "http://localhost:11434"
    model: str = "llava:34b"
    request_timeout: float = 110.0  # must not exceed dispatch.tile_timeout
    temperature: float = 0.1


@dataclass
class PipelineConfig:
    """Configuration for one plan analysis run."""
    tiling: TilingConfig = field(default_factory=TilingConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    measurement: MeasurementConfig = field(default_factory=MeasurementConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    rules: List[Dict[str, Any]] = field(default_factory=lambda: [r.to_dict() for r in default_rules()])
    default_dpi: float = 300.0

    @property
    def bucket_size(self) -> float:
        return self.tiling.tile_size * self.merge.bucket_fraction

    @property
    def http_timeout(self) -> float:
        """Timeout for one inference HTTP request, never longer than the tile timeout."""
        if self.dispatch.tile_timeout is None:
            return self.inference.request_timeout
        return min(self.inference.request_timeout, self.dispatch.tile_timeout)

    def build_rules(self) -> List[DimensionRule]:
        try:
            return [DimensionRule.from_dict(rule) for rule in self.rules]
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidConfiguration(f"Invalid rule configuration: {e}") from e

    def validate(self):
        """Raise InvalidConfiguration before any tile work starts."""
        tiling = self.tiling
        if tiling.tile_size <= 0:
            raise InvalidConfiguration(f"tile_size must be positive, got {tiling.tile_size}")
        if not 0 < tiling.overlap < tiling.tile_size:
            raise InvalidConfiguration(f"overlap must satisfy 0 < overlap < tile_size, got {tiling.overlap}")
        if self.dispatch.max_concurrent_tiles <= 0:
            raise InvalidConfiguration("max_concurrent_tiles must be positive")
        if self.inference.request_timeout <= 0:
            raise InvalidConfiguration("request_timeout must be positive")
        tile_timeout = self.dispatch.tile_timeout
        if tile_timeout is not None and self.inference.request_timeout > tile_timeout:
            # A request outliving its tile timeout keeps running past the batch barrier
            raise InvalidConfiguration(
                f"inference.request_timeout ({self.inference.request_timeout}s) must not exceed "
                f"dispatch.tile_timeout ({tile_timeout}s)"
            )
        if not 0.0 <= self.merge.iou_threshold < 1.0:
            raise InvalidConfiguration(f"iou_threshold must be in [0, 1), got {self.merge.iou_threshold}")
        if self.merge.bucket_fraction <= 0:
            raise InvalidConfiguration("bucket_fraction must be positive")
        if not 0.0 < self.validation.max_extent_fraction <= 1.0:
            raise InvalidConfiguration("max_extent_fraction must be in (0, 1]")
        if self.default_dpi <= 0:
            raise InvalidConfiguration("default_dpi must be positive")
        try:
            self.measurement.method_kinds()
        except ValueError as e:
            raise InvalidConfiguration(f"Invalid measurement method: {e}") from e
        self.build_rules()

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'PipelineConfig':
        """Create config from dictionary; missing sections keep their defaults."""
        config_dict = dict(config_dict or {})
        sections = {
            "tiling": TilingConfig,
            "dispatch": DispatchConfig,
            "merge": MergeConfig,
            "calibration": CalibrationConfig,
            "validation": ValidationConfig,
            "measurement": MeasurementConfig,
            "inference": InferenceConfig,
        }

        kwargs = {}
        try:
            for name, section_cls in sections.items():
                if name in config_dict:
                    kwargs[name] = section_cls(**(config_dict.pop(name) or {}))
            return cls(**kwargs, **config_dict)
        except TypeError as e:
            raise InvalidConfiguration(f"Unknown configuration key: {e}") from e

    def save(self, filepath: str):
        """Save configuration to file."""
        config_dict = self.to_dict()

        if filepath.endswith('.yaml') or filepath.endswith('.yml'):
            with open(filepath, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2, sort_keys=False)
        else:
            with open(filepath, 'w') as f:
                json.dump(config_dict, f, indent=2)

        logger.info(f"Pipeline configuration saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'PipelineConfig':
        """Load configuration from file."""
        if filepath.endswith('.yaml') or filepath.endswith('.yml'):
            with open(filepath, 'r') as f:
                config_dict = yaml.safe_load(f)
        else:
            with open(filepath, 'r') as f:
                config_dict = json.load(f)

        config = cls.from_dict(config_dict or {})
        logger.info(f"Pipeline configuration loaded from {filepath}")
        return config


def load_config(config_path: str = "config.yaml") -> PipelineConfig:
    """Load configuration from YAML file, defaults when the file does not exist."""
    if not Path(config_path).exists():
        logger.debug(f"Config file {config_path} not found, using defaults")
        return PipelineConfig()
    return PipelineConfig.load(config_path)
