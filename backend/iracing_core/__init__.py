"""Core iRacing session, fetch and reconciliation pipeline reused by the API."""

from .auth import AuthManager, AuthState, hash_password
from .catalog import CarEntry, CatalogFetcher, DriverRecord, LeagueSeason, SeriesEntry, TrackEntry
from .config import Settings
from .drivers import DriverLookup
from .errors import AuthError, PersistenceError, UpstreamError
from .feed import RaceFeed
from .race import LifecycleState, NormalizedRace, RaceNormalizer, classify
from .race_guide import RaceGuideFetcher, RawSession, SessionResult
from .session import Credential, Session, SessionStore
from .store import DataStore
from .upstream import Envelope, EnvelopeKind, UpstreamClient

__all__ = [
    "AuthError",
    "AuthManager",
    "AuthState",
    "CarEntry",
    "CatalogFetcher",
    "Credential",
    "DataStore",
    "DriverLookup",
    "DriverRecord",
    "Envelope",
    "EnvelopeKind",
    "LeagueSeason",
    "LifecycleState",
    "NormalizedRace",
    "PersistenceError",
    "RaceFeed",
    "RaceGuideFetcher",
    "RaceNormalizer",
    "RawSession",
    "SeriesEntry",
    "Session",
    "SessionResult",
    "SessionStore",
    "Settings",
    "TrackEntry",
    "UpstreamClient",
    "UpstreamError",
    "classify",
    "hash_password",
]
