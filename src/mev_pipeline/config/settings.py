"""Application settings and configuration."""
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server settings
    host: str = Field(default="0.0.0.0", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Redis settings
    redis_url: Optional[str] = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
        alias="REDIS_URL"
    )

    event_channel: str = Field(
        default="mev:events",
        description="Redis pub/sub channel for pipeline events",
        alias="EVENT_CHANNEL"
    )

    publish_events_to_redis: bool = Field(
        default=False,
        description="Publish opportunity and bundle events to Redis",
        alias="PUBLISH_EVENTS_TO_REDIS"
    )

    # Block engine settings
    block_engine_url: Optional[str] = Field(
        default=None,
        description="Block engine JSON-RPC endpoint; simulated engine is used when unset",
        alias="BLOCK_ENGINE_URL"
    )

    bundle_signing_key: Optional[str] = Field(
        default=None,
        description="Private key used to sign bundle submissions (burner wallet)",
        alias="BUNDLE_SIGNING_KEY"
    )

    submission_timeout_seconds: float = Field(
        default=2.0,
        description="Timeout for a single bundle submission",
        alias="SUBMISSION_TIMEOUT_SECONDS"
    )

    bundle_status_poll_seconds: float = Field(
        default=0.2,
        description="Delay between bundle status checks while awaiting inclusion",
        alias="BUNDLE_STATUS_POLL_SECONDS"
    )

    max_submission_retries: int = Field(
        default=0,
        description="Re-bundling attempts after a timeout or rejection",
        alias="MAX_SUBMISSION_RETRIES"
    )

    alert_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook for operational alerts",
        alias="ALERT_WEBHOOK_URL"
    )

    # Timing settings
    block_time_seconds: float = Field(
        default=0.4,
        description="Expected block/slot time in seconds",
        alias="BLOCK_TIME_SECONDS"
    )

    arbitrage_expiry_blocks: int = Field(
        default=4,
        description="Blocks an arbitrage opportunity stays actionable",
        alias="ARBITRAGE_EXPIRY_BLOCKS"
    )

    liquidation_expiry_blocks: int = Field(
        default=10,
        description="Blocks a liquidation opportunity stays actionable",
        alias="LIQUIDATION_EXPIRY_BLOCKS"
    )

    sandwich_expiry_blocks: int = Field(
        default=1,
        description="Blocks a sandwich opportunity stays actionable",
        alias="SANDWICH_EXPIRY_BLOCKS"
    )

    staleness_window_seconds: float = Field(
        default=5.0,
        description="Age after which a market snapshot is considered stale",
        alias="STALENESS_WINDOW_SECONDS"
    )

    # Queue settings
    ingestion_queue_size: int = Field(
        default=10000,
        description="Bounded ingestion queue size per venue",
        alias="INGESTION_QUEUE_SIZE"
    )

    stage_queue_size: int = Field(
        default=1000,
        description="Bounded queue size between pipeline stages",
        alias="STAGE_QUEUE_SIZE"
    )

    valuation_workers: int = Field(
        default=4,
        description="Concurrent valuation workers",
        alias="VALUATION_WORKERS"
    )

    # Detection settings
    min_profit_threshold: float = Field(
        default=0.01,
        description="Minimum detected profit, in quote units",
        alias="MIN_PROFIT_THRESHOLD"
    )

    arbitrage_trade_size: float = Field(
        default=1.0,
        description="Minimum base-asset size used to evaluate cross-venue spreads",
        alias="ARBITRAGE_TRADE_SIZE"
    )

    arbitrage_depth_fractions: List[float] = Field(
        default=[0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1],
        description="Fractions of the shallower pool's base reserves tried as arbitrage sizes",
        alias="ARBITRAGE_DEPTH_FRACTIONS"
    )

    default_liquidation_threshold: float = Field(
        default=1.10,
        description="Collateral ratio below which positions are liquidatable",
        alias="DEFAULT_LIQUIDATION_THRESHOLD"
    )

    min_victim_trade_size: float = Field(
        default=1000.0,
        description="Minimum pending trade size considered for sandwiching",
        alias="MIN_VICTIM_TRADE_SIZE"
    )

    # Valuation settings
    valuation_samples: int = Field(
        default=500,
        description="Monte Carlo samples per valuation",
        alias="VALUATION_SAMPLES"
    )

    valuation_seed: Optional[int] = Field(
        default=None,
        description="Base random seed for valuations",
        alias="VALUATION_SEED"
    )

    slippage_volatility: float = Field(
        default=0.0005,
        description="Standard deviation of sampled execution slippage",
        alias="SLIPPAGE_VOLATILITY"
    )

    competition_arrival_rate: float = Field(
        default=0.5,
        description="Competitor arrival rate per second at relative speed 1.0",
        alias="COMPETITION_ARRIVAL_RATE"
    )

    revaluation_window_fraction: float = Field(
        default=0.5,
        description="Valuation age, as a fraction of time-to-expiry, that forces re-valuation",
        alias="REVALUATION_WINDOW_FRACTION"
    )

    # Cost settings
    network_fee: float = Field(
        default=0.005,
        description="Network fee per bundle, in quote units",
        alias="NETWORK_FEE"
    )

    min_tip: float = Field(
        default=0.001,
        description="Minimum tip paid to the block producer",
        alias="MIN_TIP"
    )

    tip_safety_margin: float = Field(
        default=0.01,
        description="Profit kept back when sizing the tip",
        alias="TIP_SAFETY_MARGIN"
    )

    base_tip_fraction: float = Field(
        default=0.1,
        description="Share of expected profit tipped when competition is negligible",
        alias="BASE_TIP_FRACTION"
    )

    max_tip_fraction: float = Field(
        default=0.5,
        description="Share of expected profit tipped under certain competition",
        alias="MAX_TIP_FRACTION"
    )

    max_competition_probability: float = Field(
        default=0.95,
        description="Upper bound of the competitor capture probability",
        alias="MAX_COMPETITION_PROBABILITY"
    )

    risk_aversion: float = Field(
        default=0.5,
        description="Standard deviations subtracted from expected profit in the risk-adjusted score",
        alias="RISK_AVERSION"
    )

    reject_high_risk: bool = Field(
        default=False,
        description="Reject valuations whose 5th percentile outcome is negative",
        alias="REJECT_HIGH_RISK"
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True
    }


# Global settings instance
settings = Settings()
