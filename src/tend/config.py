"""Engine settings for tend.

Reads reconcile-engine tuning from CLI args, environment variables,
.env files, and the YAML config ``engine`` section.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    TEND_CONCURRENCY: Max repositories processed in parallel (1-64)
    TEND_MAX_RETRIES: Retries for transient git failures (0-20)
    TEND_COMMAND_TIMEOUT: Seconds allowed per git command (> 0)
    TEND_LEDGER_DIR: Directory holding the run ledger
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_CONCURRENCY = 64


def default_concurrency() -> int:
    """Bounded by available parallelism, never more than 8 by default."""
    return max(1, min(8, os.cpu_count() or 1))


@dataclass
class EngineSettings:
    concurrency: int = 0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    command_timeout: float = 300.0
    archive_ledger: bool = True
    ledger_dir: str | None = None

    def __post_init__(self) -> None:
        if not self.concurrency:
            self.concurrency = default_concurrency()

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number *attempt* (1-based)."""
        delay = self.backoff_base * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.backoff_max)


def validate_settings(settings: EngineSettings) -> None:
    """Validate engine settings and raise ValueError if invalid.

    Args:
        settings: EngineSettings instance to validate.

    Raises:
        ValueError: If a value is out of range.
    """
    if not (1 <= settings.concurrency <= MAX_CONCURRENCY):
        raise ValueError(
            f"Invalid concurrency {settings.concurrency}: "
            f"must be between 1 and {MAX_CONCURRENCY}"
        )
    if not (0 <= settings.max_retries <= 20):
        raise ValueError(
            f"Invalid max_retries {settings.max_retries}: "
            "must be between 0 and 20"
        )
    if settings.backoff_base < 0 or settings.backoff_max < 0:
        raise ValueError("Backoff delays cannot be negative")
    if settings.backoff_factor < 1:
        raise ValueError(
            f"Invalid backoff_factor {settings.backoff_factor}: must be >= 1"
        )
    if settings.command_timeout <= 0:
        raise ValueError(
            f"Invalid command_timeout {settings.command_timeout}: "
            "must be greater than 0"
        )


def _int_env(key: str, low: int, high: int) -> int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def _float_env(key: str) -> float | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a positive number"
        ) from None
    if value <= 0:
        raise ValueError(f"Invalid {key} '{raw}': must be a positive number")
    return value


def load_settings(
    concurrency: int | None = None,
    max_retries: int | None = None,
    yaml_fallbacks: dict | None = None,
) -> EngineSettings:
    """Load engine settings with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        concurrency: Override worker count (``--concurrency``).
        max_retries: Override retry count (``--max-retries``).
        yaml_fallbacks: Dict of values from the YAML ``engine`` section.

    Returns:
        Validated EngineSettings instance.

    Raises:
        ValueError: If any value is invalid.
    """
    fb = yaml_fallbacks or {}
    defaults = EngineSettings()

    # --- Numeric fields: CLI > env > YAML > default ---

    if concurrency is not None and concurrency < 1:
        raise ValueError(
            f"Invalid concurrency {concurrency}: "
            f"must be between 1 and {MAX_CONCURRENCY}"
        )
    final_concurrency = concurrency
    if final_concurrency is None:
        final_concurrency = _int_env("TEND_CONCURRENCY", 1, MAX_CONCURRENCY)
    if final_concurrency is None:
        final_concurrency = int(fb.get("concurrency") or defaults.concurrency)

    final_retries = max_retries
    if final_retries is None:
        final_retries = _int_env("TEND_MAX_RETRIES", 0, 20)
    if final_retries is None:
        final_retries = int(fb.get("max_retries", defaults.max_retries))

    final_timeout = _float_env("TEND_COMMAND_TIMEOUT")
    if final_timeout is None:
        final_timeout = float(
            fb.get("command_timeout", defaults.command_timeout)
        )

    # --- String fields: env > YAML > default ---

    ledger_dir = os.getenv("TEND_LEDGER_DIR") or fb.get("ledger_dir")

    settings = EngineSettings(
        concurrency=final_concurrency,
        max_retries=final_retries,
        backoff_base=float(fb.get("backoff_base", defaults.backoff_base)),
        backoff_factor=float(
            fb.get("backoff_factor", defaults.backoff_factor)
        ),
        backoff_max=float(fb.get("backoff_max", defaults.backoff_max)),
        command_timeout=final_timeout,
        archive_ledger=bool(
            fb.get("archive_ledger", defaults.archive_ledger)
        ),
        ledger_dir=ledger_dir or None,
    )

    validate_settings(settings)
    logger.debug("Engine settings: %s", settings)

    return settings
