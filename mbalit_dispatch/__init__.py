# mbalit-dispatch/mbalit_dispatch/__init__.py

from .models import (
    CancelledBy,
    CollectorPresence,
    DispatchOutcome,
    GeoLocation,
    Job,
    JobStatus,
    MatchResult,
    PaymentStatus,
    WasteSize,
    WasteType,
)
from .config import (
    AVG_SPEED_KMH,
    DISPATCH_MAX_ATTEMPTS,
    DISPATCH_RETRY_DELAY_SECONDS,
    NO_COLLECTORS_REASON,
    DispatchConfig,
)
from .errors import (
    ConcurrentClaimLost,
    DispatchError,
    InvalidCoordinates,
    InvalidTransition,
    JobNotFound,
    NoEligibleCollector,
    NotDispatchable,
)
from .jobs import InMemoryJobStore, JobStore
from .presence import InMemoryPresenceStore, PresenceRegistry, PresenceStore
from .wallet import InMemoryWallet, Wallet, WalletTransaction
from .matcher import Matcher, select_nearest
from .lifecycle import JobLifecycle
from .dispatch import Dispatcher, payment_cleared
from .pricing import calculate_price, format_price
from .utils import estimate_minutes, format_eta, haversine_distance
from .simulation import Simulation

__version__ = "0.3.0"
__author__ = "Mbalit Engineering"

__all__ = [
    # Models
    "CancelledBy",
    "CollectorPresence",
    "DispatchOutcome",
    "GeoLocation",
    "Job",
    "JobStatus",
    "MatchResult",
    "PaymentStatus",
    "WasteSize",
    "WasteType",
    # Errors
    "DispatchError",
    "JobNotFound",
    "NotDispatchable",
    "NoEligibleCollector",
    "ConcurrentClaimLost",
    "InvalidTransition",
    "InvalidCoordinates",
    # Stores
    "JobStore",
    "InMemoryJobStore",
    "PresenceStore",
    "InMemoryPresenceStore",
    "Wallet",
    "InMemoryWallet",
    "WalletTransaction",
    # Core
    "PresenceRegistry",
    "Matcher",
    "JobLifecycle",
    "Dispatcher",
    "Simulation",
    # Functions
    "select_nearest",
    "payment_cleared",
    "haversine_distance",
    "estimate_minutes",
    "format_eta",
    "calculate_price",
    "format_price",
    # Config
    "DispatchConfig",
    "AVG_SPEED_KMH",
    "DISPATCH_MAX_ATTEMPTS",
    "DISPATCH_RETRY_DELAY_SECONDS",
    "NO_COLLECTORS_REASON",
]
