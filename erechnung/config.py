"""
SBS Deutschland – Konfiguration
YAML-Datei (optional) plus Umgebungsvariablen (.env via python-dotenv).

Umgebungsvariablen haben Vorrang vor der YAML-Datei. Werte werden bei jedem
Aufruf neu gelesen, es gibt keinen globalen Cache.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_VIES_TIMEOUT_MS = 3500
DEFAULT_GOBD_TOLERANCE = 0.02


class Config:
    """Configuration management"""

    def __init__(self, config_file: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        load_dotenv()
        self.config_file = config_file
        self.config = data if data is not None else self._load_config()

    def _load_config(self) -> Dict:
        """Load configuration from YAML file"""
        if not self.config_file:
            return {}

        if not Path(self.config_file).exists():
            raise FileNotFoundError(f"Config file not found: {self.config_file}")

        with open(self.config_file, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    def get(self, key: str, default=None):
        """Get configuration value by dot notation (e.g., 'vies.timeout_ms')"""
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    # -- typed accessors ----------------------------------------------------

    def vies_enabled(self) -> bool:
        env = parse_bool(os.getenv("VIES_VALIDATION_ENABLED"))
        if env is not None:
            return env
        configured = self.get("vies.enabled")
        if isinstance(configured, bool):
            return configured
        parsed = parse_bool(configured)
        return True if parsed is None else parsed

    def vies_timeout_ms(self) -> int:
        for raw in (os.getenv("VIES_TIMEOUT_MS"), self.get("vies.timeout_ms")):
            value = parse_positive_int(raw)
            if value is not None:
                return value
        return DEFAULT_VIES_TIMEOUT_MS

    def gobd_tolerance(self) -> float:
        for raw in (os.getenv("GOBD_SUM_TOLERANCE"), self.get("gobd.tolerance")):
            if raw is None or raw == "":
                continue
            try:
                value = float(raw)
            except (TypeError, ValueError):
                logger.warning(f"Ungültige GoBD-Toleranz ignoriert: {raw!r}")
                continue
            if value >= 0:
                return value
        return DEFAULT_GOBD_TOLERANCE

    def xsd_path(self) -> Optional[str]:
        return os.getenv("XRECHNUNG_XSD_PATH") or self.get("xrechnung.xsd_path")

    def datev_section(self) -> Dict[str, Any]:
        """DATEV-Abschnitt inkl. Berater-/Mandantennummer aus der Umgebung"""
        section = dict(self.get("datev", {}) or {})
        berater = os.getenv("DATEV_BERATER_NUMMER")
        mandant = os.getenv("DATEV_MANDANTEN_NUMMER")
        if berater:
            section["berater_nummer"] = berater
        if mandant:
            section["mandanten_nummer"] = mandant
        return section


def parse_bool(value: Any) -> Optional[bool]:
    """'1/true/yes/on' -> True, '0/false/no/off' -> False, sonst None"""
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    return None


def parse_positive_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None
