"""
Configuration management for invoicecrop.

Loads and validates configuration from YAML files with sensible defaults.
Vision model credentials fall back to environment variables (and a local
``.env`` file) when not set in the YAML.
"""

import os
from pathlib import Path
from typing import Optional, List
from dataclasses import dataclass, field
import yaml
from dotenv import load_dotenv
from loguru import logger


DEFAULT_PROMPT = """\
You are an invoice localisation expert. Find the position of every invoice or receipt
in the image and return its bounding box.

CORE RULE: BE GENEROUS, NEVER CUT CONTENT
- When in doubt, include a little background rather than cutting the document.
- Right edge (x2) must fully contain the last digit of the main amount, the currency
  symbol, side notes, order numbers and any vertical text. Add 30-50 grid units of
  safety margin to your first estimate of x2.
- Top edge (y1) must fully contain logos, brand marks, titles and decorative bars.
  Subtract 20-30 grid units from your first estimate of y1.

OUTPUT FORMAT (one line per invoice)
<merchant name> 发票：<bbox>x1 y1 x2 y2</bbox>

Use normalized coordinates on a 0-1000 grid.
Never return the whole image [0, 0, 1000, 1000] unless the invoice really fills it."""


@dataclass
class RuntimeConfig:
    """Runtime configuration settings."""
    # Page worker pool size. The upstream model is quota-limited, so 1 is the safe default.
    workers: int = 1
    # Finished jobs kept in memory for status readers
    job_max_age_seconds: float = 3600
    job_max_count: int = 200

    def get_workers(self) -> int:
        """Resolve actual number of workers."""
        if self.workers <= 0:
            return 1
        return self.workers


@dataclass
class RateLimitConfig:
    """Limits applied to vision model calls, independent of the worker pool."""
    max_concurrent_calls: int = 1
    min_interval_seconds: float = 0.0  # Minimum spacing between call starts


@dataclass
class PDFConfig:
    """PDF processing configuration."""
    dpi: int = 300  # Rasterization DPI
    max_pages: Optional[int] = None  # None means process all pages


@dataclass
class CoordinateConfig:
    """Thresholds used to infer which coordinate space the model answered in."""
    ratio_ceiling: float = 1.001
    normalized_ceiling: float = 1005
    large_page_threshold: int = 1200
    normalized_scale: int = 1000


@dataclass
class ExtractionConfig:
    """Response parsing configuration."""
    default_confidence: float = 0.9
    label_keywords: List[str] = field(default_factory=lambda: ["发票", "invoice"])


@dataclass
class CropConfig:
    """Crop and artifact encoding configuration."""
    padding: int = 10
    output_format: str = "jpg"
    quality: int = 100
    min_crop_size: int = 10  # Crops below this in either dimension are flagged
    verify_roundtrip: bool = True
    save_page_images: bool = True


@dataclass
class VisionConfig:
    """OpenAI-compatible vision model endpoint (Volcengine Ark by default)."""
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 4096
    timeout_seconds: float = 300.0
    prompt: str = DEFAULT_PROMPT

    def __post_init__(self):
        """Load endpoint settings from environment variables if not set in config."""
        load_dotenv()
        if not self.api_key:
            self.api_key = os.environ.get("ARK_API_KEY", "")
        if not self.base_url:
            self.base_url = os.environ.get("ARK_BASE_URL", "https://ark.cn-beijing.volces.com/api/v3")
        if not self.model:
            self.model = os.environ.get("ARK_MODEL", "doubao-seed-1-6-vision-250815")

    @property
    def is_ready(self) -> bool:
        """Check if the vision endpoint is configured."""
        return bool(self.base_url and self.api_key and self.model)


@dataclass
class StorageConfig:
    """Storage locations and retention."""
    upload_dir: str = "uploads"
    output_dir: str = "outputs"
    temp_dir: str = "temp"
    retention_hours: int = 24
    cleanup_enabled: bool = True
    cleanup_interval_seconds: float = 86400  # Periodic sweep while the server runs


@dataclass
class ServerConfig:
    """HTTP server configuration."""
    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    max_upload_mb: int = 50


@dataclass
class Config:
    """Main configuration container."""
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pdf: PDFConfig = field(default_factory=PDFConfig)
    coordinates: CoordinateConfig = field(default_factory=CoordinateConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    crop: CropConfig = field(default_factory=CropConfig)
    vision: VisionConfig = field(default_factory=VisionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        if "runtime" in data:
            config.runtime = RuntimeConfig(**data["runtime"])
        if "rate_limit" in data:
            config.rate_limit = RateLimitConfig(**data["rate_limit"])
        if "pdf" in data:
            config.pdf = PDFConfig(**data["pdf"])
        if "coordinates" in data:
            config.coordinates = CoordinateConfig(**data["coordinates"])
        if "extraction" in data:
            config.extraction = ExtractionConfig(**data["extraction"])
        if "crop" in data:
            config.crop = CropConfig(**data["crop"])
        if "vision" in data:
            config.vision = VisionConfig(**data["vision"])
        if "storage" in data:
            config.storage = StorageConfig(**data["storage"])
        if "server" in data:
            config.server = ServerConfig(**data["server"])

        return config


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML config file. If None, uses defaults.

    Returns:
        Config object with loaded or default settings.
    """
    if config_path is None:
        logger.info("No config file specified, using defaults")
        return Config()

    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return Config()

    logger.info(f"Loading config from: {config_path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        return Config()

    return Config.from_dict(data)


def save_config(config: Config, config_path: str) -> None:
    """
    Save configuration to YAML file.

    The API key is never written out; it stays in the environment.

    Args:
        config: Config object to save.
        config_path: Path to save YAML config file.
    """
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    from dataclasses import asdict
    data = asdict(config)
    data["vision"]["api_key"] = ""

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    logger.info(f"Config saved to: {config_path}")
