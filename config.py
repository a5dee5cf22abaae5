from dataclasses import dataclass, field, fields, asdict
from typing import List
import yaml
from pathlib import Path


@dataclass
class HashingConfig:
    """Configuration for content and perceptual hashing"""
    hash_size: int = 16  # 16x16 pHash = 256 bits
    max_image_dimension: int = 1000
    excluded_folders: List[str] = field(
        default_factory=lambda: ['_duplicates', '.thumb', '@eaDir']
    )


@dataclass
class NearDuplicateConfig:
    """Configuration for near-duplicate grouping"""
    hash_threshold: int = 8
    move_files: bool = True
    index_type: str = "brute"  # Options: brute, faiss


@dataclass
class BurstConfig:
    """Configuration for burst grouping"""
    time_gap_ms: int = 2000


@dataclass
class EventConfig:
    """Configuration for event (memory) clustering"""
    time_gap_hours: float = 3.0
    distance_km: float = 30.0
    min_photos: int = 3
    max_photos_per_event: int = 200
    max_payloads_per_run: int = 10


@dataclass
class FaceConfig:
    """Configuration for face detection and identity matching"""
    models_dir: str = "models"
    detection_model: str = "det_10g.onnx"
    recognition_model: str = "w600k_r50.onnx"
    device: str = "cpu"
    input_size: int = 640
    strides: List[int] = field(default_factory=lambda: [8, 16, 32])
    score_thresholds: List[float] = field(default_factory=lambda: [0.15, 0.15, 0.15])
    nms_threshold: float = 0.4
    match_threshold: float = 0.45
    exclusive_per_photo: bool = False
    max_image_dimension: int = 1600


@dataclass
class CacheConfig:
    """Configuration for query result caching"""
    ttl_seconds: float = 60.0
    max_entries: int = 128


@dataclass
class SystemConfig:
    """System-wide configuration"""
    database_path: str = "data/photos.db"
    photo_root: str = "data/photos"
    quarantine_dir: str = "data/photos/_duplicates"
    log_level: str = "INFO"
    log_dir: str = "logs"
    progress_every: int = 50
    progress_interval_seconds: float = 5.0
    show_progress_bars: bool = True

    hashing: HashingConfig = field(default_factory=HashingConfig)
    near_duplicates: NearDuplicateConfig = field(default_factory=NearDuplicateConfig)
    bursts: BurstConfig = field(default_factory=BurstConfig)
    events: EventConfig = field(default_factory=EventConfig)
    faces: FaceConfig = field(default_factory=FaceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def save(self, path: str = "config.yaml"):
        """Save configuration to YAML file"""
        with open(path, 'w') as f:
            yaml.dump(asdict(self), f, default_flow_style=False, indent=2)

    @classmethod
    def load(cls, path: str = "config.yaml") -> 'SystemConfig':
        """Load configuration from YAML file"""
        if not Path(path).exists():
            return cls()  # Return default config

        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f) or {}

        config = cls()

        # Load system settings
        for name in ('database_path', 'photo_root', 'quarantine_dir', 'log_level',
                     'log_dir', 'progress_every', 'progress_interval_seconds',
                     'show_progress_bars'):
            setattr(config, name, config_dict.get(name, getattr(config, name)))

        # Load section settings
        config.hashing = _load_section(HashingConfig, config_dict.get('hashing'))
        config.near_duplicates = _load_section(NearDuplicateConfig,
                                               config_dict.get('near_duplicates'))
        config.bursts = _load_section(BurstConfig, config_dict.get('bursts'))
        config.events = _load_section(EventConfig, config_dict.get('events'))
        config.faces = _load_section(FaceConfig, config_dict.get('faces'))
        config.cache = _load_section(CacheConfig, config_dict.get('cache'))

        return config


def _load_section(section_cls, values):
    """Build a config section, keeping defaults for keys the file omits"""
    section = section_cls()
    if not values:
        return section

    for f in fields(section_cls):
        if f.name in values:
            setattr(section, f.name, values[f.name])

    return section
