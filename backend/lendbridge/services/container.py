from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from lendbridge.core.config import Settings
from lendbridge.services.contract import Web3CollateralOracle
from lendbridge.services.loans import LoanManager
from lendbridge.services.ltv import Scales
from lendbridge.services.oracle import CollateralOracle
from lendbridge.services.orchestrator import LendingOrchestrator, LendingPolicy
from lendbridge.services.rate_feed import RateFeed
from lendbridge.services.rate_source import HttpRateSource, RateSource


@dataclass
class Services:
    settings: Settings
    sessions: async_sessionmaker
    feed: RateFeed
    loans: LoanManager
    lending: LendingOrchestrator
    engine: AsyncEngine | None = None


def scales_from(cfg: Settings) -> Scales:
    return Scales(
        collateral_decimals=cfg.collateral_decimals,
        loan_decimals=cfg.loan_decimals,
        rate_decimals=cfg.rate_decimals,
    )


def policy_from(cfg: Settings) -> LendingPolicy:
    return LendingPolicy(
        ltv_ratio=cfg.default_ltv_ratio,
        min_loan_amount=cfg.min_loan_amount,
        max_loan_amount=cfg.max_loan_amount,
        rate_max_age=timedelta(minutes=cfg.rate_max_age_minutes),
        tolerance_units=cfg.consistency_tolerance_units,
    )


def build_services(
    cfg: Settings,
    sessions: async_sessionmaker,
    *,
    oracle: CollateralOracle | None = None,
    source: RateSource | None = None,
    engine: AsyncEngine | None = None,
) -> Services:
    scales = scales_from(cfg)

    if source is None:
        source = HttpRateSource(
            cfg.rate_api_url,
            cfg.rate_api_key,
            timeout_s=cfg.rate_api_timeout_seconds,
            provider=cfg.rate_provider_name,
        )
    if oracle is None:
        oracle = Web3CollateralOracle(
            cfg.chain_rpc_url,
            cfg.contract_address,
            cfg.token_address,
            cfg.signer_private_key,
            scales=scales,
            timeout_s=cfg.contract_timeout_seconds,
            receipt_timeout_s=cfg.receipt_timeout_seconds,
        )

    feed = RateFeed(sessions, source, pair=(cfg.collateral_currency, cfg.loan_currency), scales=scales)
    loans = LoanManager(
        sessions,
        scales=scales,
        term_days=cfg.loan_term_days,
        collateral_currency=cfg.collateral_currency,
        loan_currency=cfg.loan_currency,
    )
    lending = LendingOrchestrator(oracle, feed, loans, policy=policy_from(cfg), scales=scales)
    return Services(settings=cfg, sessions=sessions, feed=feed, loans=loans, lending=lending, engine=engine)
