"""Scanner configuration: named, validated thresholds for every pipeline stage."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from facegate.errors import ConfigError
from facegate.io_utils import load_yaml
from facegate.types import MESH_MIN_LANDMARKS

LOGGER = logging.getLogger("facegate.config")


@dataclass
class ValidatorConfig:
    min_keypoints: int = 4
    min_spread: float = 0.30
    min_aspect_ratio: float = 0.6
    max_aspect_ratio: float = 1.5
    edge_margin: float = 5.0
    # Reject when more than this share of keypoints sits on one line (hands, fingers)
    max_linear_fraction: float = 0.6
    # Line distance tolerance as a fraction of the face box diagonal
    linear_tolerance: float = 0.05
    min_face_size: float = 20.0
    min_face_area_ratio: float = 0.005
    max_face_area_ratio: float = 0.8
    check_mesh_visibility: bool = True

    @classmethod
    def strict(cls) -> "ValidatorConfig":
        """Tighter rule set applied before a final accept or an enrollment."""
        return cls(min_keypoints=6, min_aspect_ratio=0.75, max_aspect_ratio=1.3, edge_margin=20.0)

    @classmethod
    def strict_for(cls, keypoint_count: int) -> "ValidatorConfig":
        """Strict rules, relaxed on keypoint count for detectors emitting fewer than six."""
        strict = cls.strict()
        if 0 < keypoint_count < strict.min_keypoints:
            strict.min_keypoints = keypoint_count
        return strict


@dataclass
class QualityConfig:
    size_weight: float = 0.25
    position_weight: float = 0.25
    keypoints_weight: float = 0.25
    edge_weight: float = 0.15
    aspect_weight: float = 0.10
    # Face area / frame area bands
    size_min_ratio: float = 0.08
    size_ideal_min: float = 0.12
    size_ideal_max: float = 0.25
    size_max_ratio: float = 0.40
    size_partial: float = 0.6
    # Normalized center offset bands
    position_ideal: float = 0.15
    position_max: float = 0.30
    position_partial: float = 0.7
    min_keypoints: int = 4
    good_keypoints: int = 6
    edge_margin: float = 20.0
    aspect_ideal_min: float = 0.8
    aspect_ideal_max: float = 1.2
    aspect_min: float = 0.6
    aspect_max: float = 1.4
    aspect_partial: float = 0.7
    high_quality_threshold: float = 0.90
    acceptable_threshold: float = 0.65
    # Sub-scores whose zero forces the overall score to zero
    critical: Tuple[str, ...] = ("size", "position", "keypoints", "edge", "aspect")

    @property
    def weights(self) -> Dict[str, float]:
        return {
            "size": self.size_weight,
            "position": self.position_weight,
            "keypoints": self.keypoints_weight,
            "edge": self.edge_weight,
            "aspect": self.aspect_weight,
        }


@dataclass
class EmbeddingConfig:
    expected_keypoints: int = 6
    include_angles: bool = True
    l2_normalize: bool = True
    position_gain: float = 5.0
    position_power_gain: float = 20.0
    aspect_gain: float = 20.0
    ratio_gain: float = 10.0
    distance_gain: float = 50.0
    distance_power_gain: float = 100.0
    distance_log_gain: float = 50.0
    angle_gain: float = 20.0
    angle_trig_gain: float = 30.0
    symmetry_gain: float = 200.0
    density_gain: float = 50.0
    variance_gain: float = 1000.0


@dataclass
class SimilarityConfig:
    cosine_weight: float = 0.5
    euclidean_weight: float = 0.3
    pearson_weight: float = 0.2
    pose_check: bool = True
    # Leading embedding dims holding per-keypoint positions
    pose_slice: int = 24
    pose_tolerance: float = 0.5
    pose_penalty: float = 0.5


@dataclass
class MatchConfig:
    threshold: float = 0.90
    min_gap: float = 0.10
    adaptive: bool = True
    adaptive_min_score: float = 0.85
    adaptive_min_gap: float = 0.10
    adaptive_amount: float = 0.05
    adaptive_floor: float = 0.70
    family_avg_score: float = 0.75
    family_max_score: float = 0.90


@dataclass
class CaptureConfig:
    required_stable_frames: int = 1
    stability_window: float = 2.0
    same_person_threshold: float = 0.80
    handoff_dwell: float = 1.5
    recent_match_cooldown: float = 3.0


@dataclass
class GalleryConfig:
    ttl: float = 30.0
    retry_after: float = 5.0
    refresh_workers: int = 2


@dataclass
class SessionConfig:
    scan_interval: float = 0.1
    low_quality_delay: float = 0.3
    dwell_delay: float = 0.8
    post_match_delay: float = 2.0
    detector_timeout: float = 1.0
    attendance_workers: int = 2


# (min, max) inclusive for each bounded field, keyed by "section.field"
SETTINGS_BOUNDS: Dict[str, Tuple[float, float]] = {
    "validator.min_keypoints": (3, 500),
    "validator.min_spread": (0.05, 0.95),
    "validator.min_aspect_ratio": (0.3, 1.0),
    "validator.max_aspect_ratio": (1.0, 3.0),
    "validator.edge_margin": (0.0, 100.0),
    "validator.max_linear_fraction": (0.3, 1.0),
    "validator.linear_tolerance": (0.001, 0.5),
    "validator.min_face_size": (0.0, 500.0),
    "validator.min_face_area_ratio": (0.0, 0.5),
    "validator.max_face_area_ratio": (0.1, 1.0),
    "quality.size_weight": (0.0, 1.0),
    "quality.position_weight": (0.0, 1.0),
    "quality.keypoints_weight": (0.0, 1.0),
    "quality.edge_weight": (0.0, 1.0),
    "quality.aspect_weight": (0.0, 1.0),
    "quality.min_keypoints": (1, 500),
    "quality.good_keypoints": (1, 500),
    "quality.edge_margin": (0.0, 100.0),
    "quality.high_quality_threshold": (0.5, 1.0),
    "quality.acceptable_threshold": (0.3, 0.95),
    "embedding.expected_keypoints": (3, 68),
    "similarity.cosine_weight": (0.0, 1.0),
    "similarity.euclidean_weight": (0.0, 1.0),
    "similarity.pearson_weight": (0.0, 1.0),
    "similarity.pose_slice": (1, 4096),
    "similarity.pose_tolerance": (0.01, 10.0),
    "similarity.pose_penalty": (0.0, 1.0),
    "match.threshold": (0.5, 0.99),
    "match.min_gap": (0.0, 0.5),
    "match.adaptive_min_score": (0.5, 1.0),
    "match.adaptive_min_gap": (0.0, 0.5),
    "match.adaptive_amount": (0.0, 0.2),
    "match.adaptive_floor": (0.5, 0.99),
    "match.family_avg_score": (0.3, 1.0),
    "match.family_max_score": (0.3, 1.0),
    "capture.required_stable_frames": (1, 10),
    "capture.stability_window": (0.5, 10.0),
    "capture.same_person_threshold": (0.5, 0.99),
    "capture.handoff_dwell": (0.0, 10.0),
    "capture.recent_match_cooldown": (0.0, 60.0),
    "gallery.ttl": (1.0, 3600.0),
    "gallery.retry_after": (0.0, 600.0),
    "gallery.refresh_workers": (1, 16),
    "session.scan_interval": (0.0, 2.0),
    "session.low_quality_delay": (0.0, 5.0),
    "session.dwell_delay": (0.0, 5.0),
    "session.post_match_delay": (0.0, 10.0),
    "session.detector_timeout": (0.05, 30.0),
    "session.attendance_workers": (1, 16),
}


@dataclass
class ScannerConfig:
    """All tunable thresholds, grouped by pipeline stage."""

    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    match: MatchConfig = field(default_factory=MatchConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    gallery: GalleryConfig = field(default_factory=GalleryConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ScannerConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config sections: {unknown}")
        defaults = cls()
        sections = {}
        for f in fields(cls):
            section_default = getattr(defaults, f.name)
            raw = data.get(f.name)
            if raw is None:
                sections[f.name] = section_default
                continue
            if not isinstance(raw, Mapping):
                raise ConfigError(f"Config section '{f.name}' must be a mapping")
            sections[f.name] = _build_section(f.name, section_default, raw)
        config = cls(**sections)
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        payload: Dict[str, Dict[str, Any]] = {}
        for f in fields(self):
            section = asdict(getattr(self, f.name))
            payload[f.name] = {
                key: list(value) if isinstance(value, tuple) else value for key, value in section.items()
            }
        return payload

    def validate(self) -> None:
        """Raise ConfigError when any bounded field is out of range or inconsistent."""
        for key, (low, high) in SETTINGS_BOUNDS.items():
            section_name, field_name = key.split(".", 1)
            value = getattr(getattr(self, section_name), field_name)
            if not low <= value <= high:
                raise ConfigError(f"{key}={value} outside allowed range [{low}, {high}]")

        v = self.validator
        if v.min_aspect_ratio >= v.max_aspect_ratio:
            raise ConfigError("validator.min_aspect_ratio must be below validator.max_aspect_ratio")
        if v.min_face_area_ratio >= v.max_face_area_ratio:
            raise ConfigError("validator.min_face_area_ratio must be below validator.max_face_area_ratio")

        q = self.quality
        if not q.size_min_ratio <= q.size_ideal_min <= q.size_ideal_max <= q.size_max_ratio:
            raise ConfigError("quality size bands must satisfy min <= ideal_min <= ideal_max <= max")
        if not q.aspect_min <= q.aspect_ideal_min <= q.aspect_ideal_max <= q.aspect_max:
            raise ConfigError("quality aspect bands must satisfy min <= ideal_min <= ideal_max <= max")
        if q.position_ideal > q.position_max:
            raise ConfigError("quality.position_ideal must not exceed quality.position_max")
        if q.min_keypoints > q.good_keypoints:
            raise ConfigError("quality.min_keypoints must not exceed quality.good_keypoints")
        if sum(q.weights.values()) <= 0:
            raise ConfigError("quality weights must not all be zero")
        bad_critical = sorted(set(q.critical) - set(q.weights))
        if bad_critical:
            raise ConfigError(f"quality.critical has unknown sub-scores: {bad_critical}")

        s = self.similarity
        if s.cosine_weight + s.euclidean_weight + s.pearson_weight <= 0:
            raise ConfigError("similarity weights must not all be zero")

        if self.match.adaptive_floor > self.match.threshold:
            LOGGER.warning(
                "match.adaptive_floor %.2f is above match.threshold %.2f; relaxation has no effect",
                self.match.adaptive_floor,
                self.match.threshold,
            )

    def for_detector(self, keypoint_count: int) -> "ScannerConfig":
        """Fit embedding length, pose slice and keypoint scoring to a detector's keypoint count.

        Dense meshes (>= 400 landmarks) use the mesh embedding and keep the config unchanged.
        """
        if keypoint_count >= MESH_MIN_LANDMARKS or keypoint_count == self.embedding.expected_keypoints:
            return self
        LOGGER.info("Using %d keypoints per embedding", keypoint_count)
        config = self.with_overrides("embedding", expected_keypoints=keypoint_count)
        config = config.with_overrides("similarity", pose_slice=4 * keypoint_count)
        if keypoint_count < config.quality.good_keypoints:
            config = config.with_overrides(
                "quality",
                good_keypoints=keypoint_count,
                min_keypoints=min(config.quality.min_keypoints, keypoint_count),
            )
        if keypoint_count < config.validator.min_keypoints:
            config = config.with_overrides("validator", min_keypoints=keypoint_count)
        return config

    def with_overrides(self, section: str, **values: Any) -> "ScannerConfig":
        """Return a copy with fields of one section replaced (None values are ignored)."""
        updates = {key: value for key, value in values.items() if value is not None}
        if not updates:
            return self
        current = getattr(self, section)
        merged = _build_section(section, current, updates)
        config = replace(self, **{section: merged})
        config.validate()
        return config


def _build_section(name: str, default: Any, raw: Mapping[str, Any]) -> Any:
    allowed = {f.name: f for f in fields(default)}
    unknown = sorted(set(raw) - set(allowed))
    if unknown:
        raise ConfigError(f"Unknown keys in config section '{name}': {unknown}")
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        values[key] = _coerce(f"{name}.{key}", getattr(default, key), value)
    return replace(default, **values)


def _coerce(key: str, default: Any, value: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key} must be a boolean, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{key} must be a number, got {value!r}")
        return float(value)
    if isinstance(default, tuple):
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise ConfigError(f"{key} must be a list, got {value!r}")
        return tuple(value)
    return value


def load_scanner_config(path: Optional[Path]) -> ScannerConfig:
    """Load a scanner YAML config; a missing path yields defaults."""
    if path is None:
        return ScannerConfig()
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    data = load_yaml(path)
    config = ScannerConfig.from_dict(data)
    LOGGER.info("Loaded scanner config %s", path)
    return config
