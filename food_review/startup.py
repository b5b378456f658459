from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .config import Settings

logger = logging.getLogger(__name__)


def _collect_missing(settings: Settings, pairs: Iterable[Tuple[str, str]]) -> list[str]:
    missing: list[str] = []
    for attr, label in pairs:
        value = getattr(settings, attr, None)
        if value in (None, "", [], {}):
            missing.append(label)
    return missing


def validate_settings(settings: Settings) -> None:
    """Fail fast when mandatory secrets/config values are missing for non-dev envs."""
    environment = (settings.environment or "dev").lower()

    if settings.review_default_limit > settings.review_max_limit:
        raise RuntimeError(
            "REVIEW_DEFAULT_LIMIT must not exceed REVIEW_MAX_LIMIT "
            f"({settings.review_default_limit} > {settings.review_max_limit})"
        )

    # Always warn in dev if critical secrets are absent to encourage local coverage.
    dev_missing = _collect_missing(
        settings,
        [
            ("database_url", "DATABASE_URL"),
            ("openai_api_key", "OPENAI_API_KEY"),
            ("cron_secret", "CRON_SECRET"),
        ],
    )
    if environment == "dev":
        if dev_missing:
            logger.warning(
                "Running in dev without recommended secrets; some features may be disabled: %s",
                ", ".join(dev_missing),
            )
        return

    # Non-dev environments must have the following.
    required_pairs: list[Tuple[str, str]] = [
        ("database_url", "DATABASE_URL"),
        ("openai_api_key", "OPENAI_API_KEY"),
        ("cron_secret", "CRON_SECRET"),
        ("admin_emails", "ADMIN_EMAILS"),
    ]

    if not settings.auth_disable_verification:
        required_pairs.extend(
            [
                ("clerk_issuer", "CLERK_ISSUER"),
                ("clerk_audience", "CLERK_AUDIENCE"),
            ]
        )

    missing = _collect_missing(settings, required_pairs)
    if missing:
        raise RuntimeError(
            f"Missing required configuration for environment '{environment}': {', '.join(sorted(missing))}"
        )
