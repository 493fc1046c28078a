import certifi
from beanie import init_beanie
from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase

from app.core.config import Settings, get_settings
from app.db.documents import DOCUMENT_MODELS


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def create_client(settings: Settings | None = None) -> AsyncMongoClient:
    settings = settings or get_settings()
    # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
    kwargs = {"tz_aware": False}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncMongoClient(settings.mongodb_uri, **kwargs)


async def init_db(client: AsyncMongoClient, db_name: str) -> AsyncDatabase:
    """Register the documents and create their indexes."""
    database = client[db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return database
