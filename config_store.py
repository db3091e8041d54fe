"""
Configuration for the Replicate transcription service.

Settings come from, in order of precedence:
1. Environment variables
2. Saved config under DATA_ROOT/config/replicate.json (editable at runtime)
3. Defaults

Security notes:
- Token and webhook secret values are stored but NEVER returned via API
- Config files are written with restricted permissions (0600)
- Never log token or secret values
"""

import os
import json
import tempfile
from dataclasses import dataclass
from datetime import timedelta, datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

from logger import log_event


DEFAULT_BASE_URL = 'https://api.replicate.com/v1'
DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_POLL_MAX_WORKERS = 4
DEFAULT_RETENTION_DAYS = 7
DEFAULT_CREATE_TIMEOUT_SECONDS = 60
DEFAULT_REQUEST_TIMEOUT_SECONDS = 15
DEFAULT_COST_PER_MINUTE_USD = 0.0023


@dataclass(frozen=True)
class TranscriberConfig:
    """Everything the job lifecycle needs, resolved once at startup."""

    api_token: str = ''
    webhook_secret: str = ''
    webhook_url: str = ''
    model: str = ''
    base_url: str = DEFAULT_BASE_URL
    data_root: str = '/data'
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_max_workers: int = DEFAULT_POLL_MAX_WORKERS
    retention_days: int = DEFAULT_RETENTION_DAYS
    create_timeout_seconds: float = DEFAULT_CREATE_TIMEOUT_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    cost_per_minute_usd: float = DEFAULT_COST_PER_MINUTE_USD

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)

    def missing_provider_settings(self) -> list:
        """Names of provider settings that must be set before creating jobs."""
        missing = []
        if not self.api_token:
            missing.append('REPLICATE_API_TOKEN')
        if not self.webhook_url:
            missing.append('REPLICATE_WEBHOOK_URL')
        if not self.model:
            missing.append('REPLICATE_MODEL')
        return missing

    def safe_summary(self) -> Dict[str, Any]:
        """Config view that is safe to log or return over HTTP."""
        return {
            'baseUrl': self.base_url,
            'webhookUrl': self.webhook_url,
            'model': self.model,
            'tokenSet': bool(self.api_token),
            'webhookSecretSet': bool(self.webhook_secret),
            'pollIntervalSeconds': self.poll_interval_seconds,
            'pollMaxWorkers': self.poll_max_workers,
            'retentionDays': self.retention_days,
        }


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except ValueError:
        return default


# =============================================================================
# Saved config file
# =============================================================================

_REPLICATE_CONFIG_FILE = 'replicate.json'


def _get_config_dir(root: Optional[str] = None) -> Path:
    """Get the config directory path, creating it if needed."""
    config_dir = Path(root or os.environ.get('DATA_ROOT', '/data')) / 'config'
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON atomically (write to temp file, then rename)."""
    fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)
        os.chmod(path, 0o600)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    """Read JSON file, returning None if it doesn't exist."""
    if not path.exists():
        return None
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        log_event('warning', 'config_read_error', path=str(path), error=str(e))
        return None


def _read_saved(root: Optional[str] = None) -> Dict[str, Any]:
    return _read_json(_get_config_dir(root) / _REPLICATE_CONFIG_FILE) or {}


def get_replicate_config(root: Optional[str] = None) -> Dict[str, Any]:
    """
    Get saved Replicate configuration.

    Returns:
        {
            'webhookUrl': str,
            'model': str,
            'tokenSet': bool,
            'webhookSecretSet': bool,
            'updatedAt': str | None
        }

    Note: Token and webhook secret are NEVER returned by this function.
    """
    data = _read_saved(root)
    return {
        'webhookUrl': data.get('webhookUrl', ''),
        'model': data.get('model', ''),
        'tokenSet': bool(data.get('token')),
        'webhookSecretSet': bool(data.get('webhookSecret')),
        'updatedAt': data.get('updatedAt'),
    }


def save_replicate_config(
    token: Optional[str] = None,
    webhook_secret: Optional[str] = None,
    webhook_url: Optional[str] = None,
    model: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Save Replicate configuration.

    Only updates fields that are provided (not None). Secrets can be
    explicitly cleared by passing an empty string.

    Returns:
        The saved config without secrets (same as get_replicate_config)
    """
    config_path = _get_config_dir(root) / _REPLICATE_CONFIG_FILE
    existing = _read_json(config_path) or {}

    if token is not None:
        existing['token'] = token
    if webhook_secret is not None:
        existing['webhookSecret'] = webhook_secret
    if webhook_url is not None:
        if webhook_url and not webhook_url.startswith(('http://', 'https://')):
            raise ValueError(f"Invalid webhook URL: {webhook_url}")
        existing['webhookUrl'] = webhook_url
    if model is not None:
        existing['model'] = model

    existing['updatedAt'] = datetime.now(timezone.utc).isoformat()

    _atomic_write_json(config_path, existing)

    log_event('info', 'replicate_config_saved',
              webhookUrl=existing.get('webhookUrl', ''),
              model=existing.get('model', ''),
              tokenSet=bool(existing.get('token')),
              webhookSecretSet=bool(existing.get('webhookSecret')))

    return get_replicate_config(root)


def clear_replicate_config(root: Optional[str] = None) -> None:
    """Clear all saved Replicate configuration."""
    config_path = _get_config_dir(root) / _REPLICATE_CONFIG_FILE
    if config_path.exists():
        config_path.unlink()
        log_event('info', 'replicate_config_cleared')


# =============================================================================
# Resolved config
# =============================================================================

def load_config() -> TranscriberConfig:
    """
    Resolve the service configuration.

    Provider settings use the environment first and fall back to the saved
    config file. Tunables come from the environment only.
    """
    root = os.environ.get('DATA_ROOT', '/data')
    saved = _read_saved(root)

    config = TranscriberConfig(
        api_token=os.environ.get('REPLICATE_API_TOKEN') or saved.get('token', ''),
        webhook_secret=os.environ.get('REPLICATE_WEBHOOK_SECRET') or saved.get('webhookSecret', ''),
        webhook_url=os.environ.get('REPLICATE_WEBHOOK_URL') or saved.get('webhookUrl', ''),
        model=os.environ.get('REPLICATE_MODEL') or saved.get('model', ''),
        base_url=os.environ.get('REPLICATE_BASE_URL', DEFAULT_BASE_URL).rstrip('/'),
        data_root=root,
        poll_interval_seconds=_env_float('POLL_INTERVAL_SECONDS', DEFAULT_POLL_INTERVAL_SECONDS),
        poll_max_workers=max(1, _env_int('POLL_MAX_WORKERS', DEFAULT_POLL_MAX_WORKERS)),
        retention_days=_env_int('JOB_RETENTION_DAYS', DEFAULT_RETENTION_DAYS),
        create_timeout_seconds=_env_float('REPLICATE_CREATE_TIMEOUT_SECONDS',
                                          DEFAULT_CREATE_TIMEOUT_SECONDS),
        request_timeout_seconds=_env_float('REPLICATE_REQUEST_TIMEOUT_SECONDS',
                                           DEFAULT_REQUEST_TIMEOUT_SECONDS),
        cost_per_minute_usd=_env_float('COST_PER_MINUTE_USD', DEFAULT_COST_PER_MINUTE_USD),
    )

    missing = config.missing_provider_settings()
    if missing:
        log_event('warning', 'replicate_config_incomplete', missing=missing)
    if not config.webhook_secret:
        log_event('warning', 'webhook_secret_missing',
                  message='Inbound webhooks will be rejected until REPLICATE_WEBHOOK_SECRET is set')

    return config
