import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from orbit_credits.core.config import get_settings
from orbit_credits.models.activity_event import ActivityEvent
from orbit_credits.models.audit_log import AuditLog
from orbit_credits.models.credit_pricing import CreditPricing
from orbit_credits.models.credit_transaction import CreditTransaction
from orbit_credits.models.early_access_unlock import EarlyAccessUnlock
from orbit_credits.models.failed_job import FailedJob
from orbit_credits.models.user import User

DOCUMENT_MODELS = [
    User,
    CreditPricing,
    CreditTransaction,
    EarlyAccessUnlock,
    ActivityEvent,
    AuditLog,
    FailedJob,
]

_client: AsyncIOMotorClient | None = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client() -> AsyncIOMotorClient:
    """Client bound by init_db; sessions for atomic units are started from it."""
    if _client is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _client


async def init_db(client: AsyncIOMotorClient | None = None) -> None:
    """Connect and register document models. Pass `client` to bind a prebuilt (e.g. in-memory) client."""
    global _client
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    _client = client
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
