from __future__ import annotations
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List
import json
import logging

log = logging.getLogger(__name__)

APP_DIR = Path.home() / ".fleetwatch"
CFG_PATH = APP_DIR / "config.json"

DEFAULT_PROVIDERS = ["claude", "openai", "gemini"]

@dataclass
class AppConfig:
    session: str = ""                             # "" → all sessions
    log_level: str = "INFO"

    # Identity
    identity_refresh_seconds: float = 15.0

    # Health
    health_check_interval_seconds: float = 30.0
    idle_threshold_seconds: float = 300.0
    stuck_threshold_seconds: float = 120.0
    use_network_activity: bool = True
    max_history: int = 100
    notification_queue_size: int = 100

    # Deadlines
    classification_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 5.0
    rotation_timeout_seconds: float = 10.0

    # Rate limits / rotation
    rate_limit_cooldown_seconds: float = 30.0
    auto_rotate: bool = True
    proactive_threshold_pct: float = 90.0
    switch_cooldown_seconds: float = 300.0
    usage_check_interval_seconds: float = 30.0
    quota_alert_threshold_pct: float = 80.0
    providers: List[str] = field(default_factory=lambda: list(DEFAULT_PROVIDERS))

def ensure_dirs(app_dir: Path = APP_DIR) -> None:
    app_dir.mkdir(parents=True, exist_ok=True)

def load_config(path: Path = CFG_PATH) -> AppConfig:
    ensure_dirs(path.parent)
    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
        return AppConfig(**known)
    except (OSError, ValueError, TypeError) as e:
        log.warning("unreadable config %s (%s), restoring defaults", path, e)
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg

def save_config(cfg: AppConfig, path: Path = CFG_PATH) -> None:
    ensure_dirs(path.parent)
    path.write_text(json.dumps(asdict(cfg), indent=2), encoding="utf-8")
