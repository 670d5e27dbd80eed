from dotenv import load_dotenv
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from pathlib import Path
import json
import logging
import os

from sitemirror.constants import (
    ASSET_REQUEST_TIMEOUT_SECONDS,
    CAPTCHA_TOKEN_CACHE_SECONDS,
    CHALLENGE_BACKOFF_BASE_SECONDS,
    CHALLENGE_BACKOFF_MULTIPLIER,
    CHALLENGE_PASSIVE_WAIT_SECONDS,
    CHALLENGE_POLL_INTERVAL_SECONDS,
    CHALLENGE_POLL_TIMEOUT_SECONDS,
    DEFAULT_ASSET_CONCURRENCY,
    DEFAULT_ASSET_RETRIES,
    DEFAULT_CERTIFY_THRESHOLD,
    DEFAULT_NAVIGATION_RETRIES,
    DEFAULT_NAVIGATION_TIMEOUT_SECONDS,
    DEFAULT_SESSION_POOL_SIZE,
    DEFAULT_USER_AGENT,
    MAX_ASSET_BYTES,
    MAX_CHALLENGE_ATTEMPTS,
    MAX_IMPORT_DEPTH,
    MAX_USES_PER_SESSION,
    PROXY_BASE_COOLDOWN_SECONDS,
    PROXY_FAILURE_RATE_THRESHOLD,
    PROXY_MAX_COOLDOWN_SECONDS,
    PROXY_MIN_SAMPLES,
    PROXY_WINDOW_SIZE,
    SIMILARITY_PASS_RATIO,
    SIMILARITY_SAMPLE_SIZE,
    STREAM_THRESHOLD_BYTES,
)

load_dotenv()  # Loads variables from .env file

logger = logging.getLogger(__name__)


class Settings:
    """
    Manages application settings loaded from environment variables.
    """
    TWOCAPTCHA_API_KEY = os.getenv("TWOCAPTCHA_API_KEY")
    CAPSOLVER_API_KEY = os.getenv("CAPSOLVER_API_KEY")
    ANTICAPTCHA_API_KEY = os.getenv("ANTICAPTCHA_API_KEY")

    # Proxy configuration
    PROXY_URLS = os.getenv("PROXY_URLS")  # comma-separated
    PROXY_FILE = os.getenv("PROXY_FILE")
    PROXY_ROTATION = os.getenv("PROXY_ROTATION", "round_robin")

    OUTPUT_DIR = os.getenv("SITEMIRROR_OUTPUT_DIR", "mirrors")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    USER_AGENT = os.getenv("USER_AGENT", DEFAULT_USER_AGENT)

    def solver_config(self) -> Dict[str, Dict[str, Any]]:
        """Build a challenge_solver_config mapping from the configured API keys.

        Priority follows declaration order: 2Captcha, CapSolver, Anti-Captcha.
        """
        keys = [
            ("2captcha", self.TWOCAPTCHA_API_KEY),
            ("capsolver", self.CAPSOLVER_API_KEY),
            ("anticaptcha", self.ANTICAPTCHA_API_KEY),
        ]
        return {
            name: {"api_key": key, "priority": index}
            for index, (name, key) in enumerate(keys)
            if key
        }


settings = Settings()


class _EnvLoadable:
    """Shared from_env/from_file/to_dict for config dataclasses."""

    ENV_PREFIX = "SITEMIRROR_"

    @classmethod
    def from_env(cls, prefix: Optional[str] = None):
        """Load values from environment variables.

        Environment variables are the field name upper-cased behind the
        class prefix, e.g. SITEMIRROR_BYPASS_MAX_ATTEMPTS=5
        """
        config = cls()
        prefix = prefix or cls.ENV_PREFIX

        for field_name, spec in config.__dataclass_fields__.items():
            env_value = os.getenv(f"{prefix}{field_name.upper()}")
            if env_value is None:
                continue
            try:
                if spec.type in (int, "int"):
                    setattr(config, field_name, int(env_value))
                elif spec.type in (float, "float"):
                    setattr(config, field_name, float(env_value))
                elif spec.type in (bool, "bool"):
                    setattr(config, field_name, env_value.lower() in ("1", "true", "yes", "on"))
                elif spec.type in (str, "str"):
                    setattr(config, field_name, env_value)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {prefix}{field_name.upper()}: {env_value!r}")

        return config

    @classmethod
    def from_file(cls, path: str, section: Optional[str] = None):
        """Load values from a JSON configuration file.

        Args:
            path: Path to JSON configuration file
            section: Optional top-level key holding this config's values
        """
        config = cls()
        file_path = Path(path)

        if not file_path.exists():
            return config

        with open(file_path, 'r') as f:
            data = json.load(f)

        if section:
            data = data.get(section, {})

        for field_name in config.__dataclass_fields__:
            if field_name in data:
                setattr(config, field_name, data[field_name])

        return config

    def to_dict(self) -> dict:
        return {
            field_name: getattr(self, field_name)
            for field_name in self.__dataclass_fields__
        }


@dataclass
class BypassConfig(_EnvLoadable):
    """Timing and retry policy for challenge resolution."""
    ENV_PREFIX = "SITEMIRROR_BYPASS_"

    max_attempts: int = MAX_CHALLENGE_ATTEMPTS
    backoff_base_seconds: float = CHALLENGE_BACKOFF_BASE_SECONDS
    backoff_multiplier: float = CHALLENGE_BACKOFF_MULTIPLIER
    poll_interval_seconds: float = CHALLENGE_POLL_INTERVAL_SECONDS
    poll_timeout_seconds: float = CHALLENGE_POLL_TIMEOUT_SECONDS
    passive_wait_seconds: float = CHALLENGE_PASSIVE_WAIT_SECONDS
    navigation_timeout_seconds: float = DEFAULT_NAVIGATION_TIMEOUT_SECONDS
    token_cache_seconds: float = CAPTCHA_TOKEN_CACHE_SECONDS

    def backoff_for(self, attempt: int) -> float:
        """Delay before the given 1-based attempt."""
        return self.backoff_base_seconds * self.backoff_multiplier ** (attempt - 1)


@dataclass
class CaptureConfig(_EnvLoadable):
    """Asset download and rewrite policy."""
    ENV_PREFIX = "SITEMIRROR_CAPTURE_"

    asset_concurrency: int = DEFAULT_ASSET_CONCURRENCY
    asset_retries: int = DEFAULT_ASSET_RETRIES
    retry_backoff_seconds: float = 0.5
    stream_threshold_bytes: int = STREAM_THRESHOLD_BYTES
    max_asset_bytes: int = MAX_ASSET_BYTES
    max_import_depth: int = MAX_IMPORT_DEPTH
    request_timeout_seconds: float = ASSET_REQUEST_TIMEOUT_SECONDS
    user_agent: str = DEFAULT_USER_AGENT


@dataclass
class VerificationConfig(_EnvLoadable):
    """Verification weights are fixed; thresholds are policy."""
    ENV_PREFIX = "SITEMIRROR_VERIFY_"

    certify_threshold: float = DEFAULT_CERTIFY_THRESHOLD
    check_similarity: bool = False
    sample_size: int = SIMILARITY_SAMPLE_SIZE
    similarity_threshold: float = SIMILARITY_PASS_RATIO
    request_timeout_seconds: float = ASSET_REQUEST_TIMEOUT_SECONDS


@dataclass
class ProxyPoolConfig(_EnvLoadable):
    """Health window and cooldown policy for proxy endpoints."""
    ENV_PREFIX = "SITEMIRROR_PROXY_"

    window_size: int = PROXY_WINDOW_SIZE
    min_samples: int = PROXY_MIN_SAMPLES
    failure_rate_threshold: float = PROXY_FAILURE_RATE_THRESHOLD
    base_cooldown_seconds: float = PROXY_BASE_COOLDOWN_SECONDS
    max_cooldown_seconds: float = PROXY_MAX_COOLDOWN_SECONDS
    min_health_score: float = 0.3


@dataclass
class MirrorConfig(_EnvLoadable):
    """Process-level configuration for the mirror."""
    ENV_PREFIX = "SITEMIRROR_"

    output_dir: str = "mirrors"
    state_dir: str = "mirrors/state"
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    session_pool_size: int = DEFAULT_SESSION_POOL_SIZE
    max_uses_per_session: int = MAX_USES_PER_SESSION
    navigation_retries: int = DEFAULT_NAVIGATION_RETRIES
    log_level: str = "INFO"

    bypass: BypassConfig = field(default_factory=BypassConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    proxy: ProxyPoolConfig = field(default_factory=ProxyPoolConfig)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "MirrorConfig":
        """Build the full configuration from a JSON file then the environment.

        Environment variables win over file values.
        """
        config = cls.from_file(path) if path else cls()
        env_config = cls.from_env()
        for field_name in config.__dataclass_fields__:
            if os.getenv(f"{cls.ENV_PREFIX}{field_name.upper()}") is not None:
                setattr(config, field_name, getattr(env_config, field_name))
        sections = {
            "bypass": BypassConfig,
            "capture": CaptureConfig,
            "verification": VerificationConfig,
            "proxy": ProxyPoolConfig,
        }
        for name, section_cls in sections.items():
            section = section_cls.from_file(path, section=name) if path else section_cls()
            env_section = section_cls.from_env()
            for field_name in section.__dataclass_fields__:
                env_key = f"{section_cls.ENV_PREFIX}{field_name.upper()}"
                if os.getenv(env_key) is not None:
                    setattr(section, field_name, getattr(env_section, field_name))
            setattr(config, name, section)
        return config

    def to_dict(self) -> dict:
        data = {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if name not in ("bypass", "capture", "verification", "proxy")
        }
        data["bypass"] = self.bypass.to_dict()
        data["capture"] = self.capture.to_dict()
        data["verification"] = self.verification.to_dict()
        data["proxy"] = self.proxy.to_dict()
        return data
