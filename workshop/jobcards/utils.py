# workshop/jobcards/utils.py
"""Per-request wiring of job card engines from the app config."""

from flask import current_app, request

from workshop.api.client import WorkshopClient
from workshop.api.workshop import Services
from workshop.drafts import DraftStore
from workshop.engine import JobCardEngine
from workshop.kv_store import SqlKeyValueStore

ROLE_HEADER = 'X-Workshop-Role'
USER_HEADER = 'X-Workshop-User'


def request_token() -> str:
    """Bearer token of the caller, falling back to the configured one."""
    header = request.headers.get('Authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return current_app.config.get('WORKSHOP_API_TOKEN', '')


def build_services(token: str | None = None) -> Services:
    cfg = current_app.config
    client = WorkshopClient(
        cfg['WORKSHOP_API_URL'],
        token=token if token is not None else cfg.get('WORKSHOP_API_TOKEN'),
        timeout=cfg.get('WORKSHOP_API_TIMEOUT', 10),
        retries=cfg.get('WORKSHOP_API_RETRIES', 3),
    )
    return Services.from_client(client)


def draft_store() -> DraftStore:
    return DraftStore(SqlKeyValueStore(), current_app.config['DRAFT_STORAGE_KEY'])


def make_engine(services: Services, role, job=None) -> JobCardEngine:
    cfg = current_app.config
    return JobCardEngine(
        services,
        role=role,
        draft_store=draft_store(),
        job=job,
        login_url=cfg['LOGIN_URL'],
        redirect_delay=cfg['AUTH_REDIRECT_DELAY'],
    )
