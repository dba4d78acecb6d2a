"""
Engine configuration and logging setup.

EngineConfig.from_env() reads AMM_* environment variables; every field has
a default so an empty environment gives a working engine. Amounts in the
environment are decimal strings ("0.9", "10") converted to wad.
"""

import logging
import os
import sys
from dataclasses import dataclass

import structlog

from amm.fixed_point import SCALE, to_wad
from amm.lmsr import DEFAULT_COVERAGE_RATIO


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class EngineConfig:
    fee_rate_bps: int = 200
    payout_per_share: int = SCALE
    coverage_ratio: int = DEFAULT_COVERAGE_RATIO
    min_initial_liquidity: int = 10 * SCALE
    min_duration: int = 3600
    max_duration: int = 365 * 24 * 3600
    early_resolution_cooldown: int = 3600
    require_validation: bool = True
    pool_address: str = "amm-pool"
    fee_collector: str = "fee-collector"
    admin_address: str = "admin"

    @classmethod
    def from_env(cls, environ=None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        return cls(
            fee_rate_bps=int(env.get("AMM_FEE_RATE_BPS", "200")),
            payout_per_share=to_wad(env.get("AMM_PAYOUT_PER_SHARE", "1")),
            coverage_ratio=to_wad(env.get("AMM_COVERAGE_RATIO", "0.9")),
            min_initial_liquidity=to_wad(
                env.get("AMM_MIN_INITIAL_LIQUIDITY", "10")),
            min_duration=int(env.get("AMM_MIN_DURATION", "3600")),
            max_duration=int(env.get("AMM_MAX_DURATION", str(365 * 24 * 3600))),
            early_resolution_cooldown=int(
                env.get("AMM_EARLY_RESOLUTION_COOLDOWN", "3600")),
            require_validation=_flag(env.get("AMM_REQUIRE_VALIDATION", "1")),
            pool_address=env.get("AMM_POOL_ADDRESS", "amm-pool"),
            fee_collector=env.get("AMM_FEE_COLLECTOR", "fee-collector"),
            admin_address=env.get("AMM_ADMIN_ADDRESS", "admin"),
        )


@dataclass(frozen=True)
class ApiSettings:
    """HTTP service settings. An empty admin_key disables the operator key."""
    admin_key: str = ""
    state_path: str = "./amm_state.json"
    initial_credits: int = 100 * SCALE
    rate_limit_per_min: int = 60

    @classmethod
    def from_env(cls, environ=None) -> "ApiSettings":
        env = os.environ if environ is None else environ
        return cls(
            admin_key=env.get("AMM_ADMIN_KEY", ""),
            state_path=env.get("AMM_STATE", "./amm_state.json"),
            initial_credits=to_wad(env.get("INITIAL_CREDITS", "100")),
            rate_limit_per_min=int(env.get("RATE_LIMIT_PER_MIN", "60")),
        )


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    Configure structlog. Call once at application entry.

    Events go to stderr through a stdlib handler; stdout stays free for
    the CLI's JSON replies. The handler is replaced on every call, so
    loggers cached by earlier configuration follow the current stream.
    """
    level = (level or os.environ.get("AMM_LOG_LEVEL", "INFO")).upper()
    fmt = fmt or os.environ.get("AMM_LOG_FORMAT", "console")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty()))

    level_num = getattr(logging, level, logging.INFO)
    logging.basicConfig(stream=sys.stderr, format="%(message)s",
                        level=level_num, force=True)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
