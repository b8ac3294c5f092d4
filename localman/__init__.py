# localman/__init__.py
import logging
from dataclasses import dataclass

from flask import Flask

from .config import Config
from .db import init_db
from .errors import register_error_handlers
from .event_store import EventStore
from .forwarder import Forwarder
from .orchestrator import RelayPoller
from .read_state import ReadStateTracker
from .settings_store import SettingsStore
from .utils.broker import BrokerClient

@dataclass
class Services:
    settings: SettingsStore
    events: EventStore
    read_state: ReadStateTracker
    broker: BrokerClient
    forwarder: Forwarder
    poller: RelayPoller

def build_services(config, broker=None, forwarder=None) -> Services:
    _engine, SessionLocal = init_db(config["DATABASE_URL"])
    settings = SettingsStore(SessionLocal)
    settings.ensure_project(config["DEFAULT_PROJECT_ID"])
    events = EventStore(SessionLocal, retention=config["HISTORY_RETENTION"])
    broker = broker or BrokerClient(config["BROKER_URL"], config["BROKER_API_KEY"], timeout=config["BROKER_TIMEOUT"])
    forwarder = forwarder or Forwarder(
        timeout=config["FORWARD_TIMEOUT"],
        resolve_loopback=config["FORWARD_RESOLVE_LOOPBACK"],
    )
    poller = RelayPoller(
        settings,
        events,
        broker,
        forwarder,
        batch_limit=config["POLL_BATCH_LIMIT"],
        stagger_seconds=config["RELAY_STAGGER_SECONDS"],
        min_interval_seconds=config["MIN_POLL_INTERVAL_SECONDS"],
        workers=config["POLL_WORKERS"],
    )
    return Services(settings, events, ReadStateTracker(events), broker, forwarder, poller)

def create_app(overrides=None, broker=None, forwarder=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"])

    app.extensions["localman"] = build_services(app.config, broker=broker, forwarder=forwarder)
    register_error_handlers(app)

    from .routes import bp as main_bp
    app.register_blueprint(main_bp)

    return app
