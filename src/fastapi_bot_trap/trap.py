"""``BotTrap`` wires every component around a single key-value store."""

import logging
import os
import secrets
from typing import Optional

from fastapi import FastAPI

from fastapi_bot_trap.automation import AutomationScoreAggregator
from fastapi_bot_trap.ban import BanLedger
from fastapi_bot_trap.challenge import ChallengeTokenIssuer
from fastapi_bot_trap.config import BotTrapConfig, ConfigStore
from fastapi_bot_trap.events import EventLog
from fastapi_bot_trap.maze import CrawlerTrapTracker
from fastapi_bot_trap.metrics import MetricsRecorder
from fastapi_bot_trap.middleware import BotTrapMiddleware
from fastapi_bot_trap.pipeline import AdmissionPipeline
from fastapi_bot_trap.rate import RateWindowCounter
from fastapi_bot_trap.shield import AdmissionShield
from fastapi_bot_trap.store import KeyValueStore, MemoryKeyValueStore

logger = logging.getLogger(__name__)

SECRET_ENV = "BOT_TRAP_CHALLENGE_SECRET"


class BotTrap:
    """Facade holding the pipeline and its collaborators.

    Args:
        store: State backend; defaults to an in-memory store.
        secret: HMAC key for challenge tokens. Falls back to the
            ``BOT_TRAP_CHALLENGE_SECRET`` environment variable, then to a
            random per-process key (tokens then stop validating on restart).
        defaults: Config used for sites with no stored config.
        report_path: Path the challenge page posts automation reports to.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        secret: Optional[str] = None,
        defaults: Optional[BotTrapConfig] = None,
        report_path: str = "/automation-report",
    ):
        self.store = store or MemoryKeyValueStore()
        self.report_path = report_path

        secret = secret or os.environ.get(SECRET_ENV)
        if not secret:
            logger.warning(
                f"{SECRET_ENV} not set; using a random challenge secret for this process"
            )
            secret = secrets.token_urlsafe(32)

        self.metrics = MetricsRecorder(self.store)
        self.event_log = EventLog(self.store)
        self.config_store = ConfigStore(self.store, defaults=defaults, event_log=self.event_log)
        self.ledger = BanLedger(self.store)
        self.rate_counter = RateWindowCounter(self.store)
        self.issuer = ChallengeTokenIssuer(secret)
        self.tracker = CrawlerTrapTracker(self.store, self.ledger, self.metrics)
        self.aggregator = AutomationScoreAggregator(self.ledger, self.metrics, self.event_log)
        self.pipeline = AdmissionPipeline(
            config_store=self.config_store,
            ledger=self.ledger,
            rate_counter=self.rate_counter,
            issuer=self.issuer,
            tracker=self.tracker,
            metrics=self.metrics,
            event_log=self.event_log,
            report_path=report_path,
        )

    def shield(self, site_id: str = "default", name: Optional[str] = None) -> AdmissionShield:
        """Endpoint decorator backed by this trap's pipeline."""
        return AdmissionShield(self.pipeline, name=name, site_id=site_id)

    def install(self, app: FastAPI, site_id: str = "default", **middleware_kwargs) -> FastAPI:
        """Guard every route of ``app`` with ``BotTrapMiddleware``."""
        app.add_middleware(BotTrapMiddleware, trap=self, site_id=site_id, **middleware_kwargs)
        return app
