"""rivulet: push-based reactive values, operators and live-query collections."""

from importlib.metadata import version as _version

__version__ = _version("rivulet")

from rivulet.reactive import Reactive, reactive
from rivulet.derived import Derived
from rivulet.share import Shared, ShareState, share, multicast
from rivulet.scheduler import (
    AsyncioScheduler,
    Scheduler,
    TimerScheduler,
    VirtualScheduler,
    get_scheduler,
    set_scheduler,
)
from rivulet.errors import (
    CollectionError,
    DocumentNotFoundError,
    DuplicateKeyError,
    FieldError,
    OperatorError,
    QueryError,
    RivuletError,
    SubscriptionError,
    ValidationError,
)
from rivulet.validation import PydanticValidator, Validator, as_validator
from rivulet.live_query import LiveQuery
from rivulet.collection import Collection, Result
from rivulet.database import Database
from rivulet.storage import MemoryStorage, StorageAdapter
from rivulet import operators
# textual NOT auto-imported, opt-in only

__all__ = [
    "Reactive",
    "reactive",
    "Derived",
    "Shared",
    "ShareState",
    "share",
    "multicast",
    "operators",
    "Scheduler",
    "AsyncioScheduler",
    "VirtualScheduler",
    "TimerScheduler",
    "set_scheduler",
    "get_scheduler",
    "RivuletError",
    "FieldError",
    "ValidationError",
    "QueryError",
    "OperatorError",
    "SubscriptionError",
    "CollectionError",
    "DuplicateKeyError",
    "DocumentNotFoundError",
    "Validator",
    "PydanticValidator",
    "as_validator",
    "LiveQuery",
    "Collection",
    "Result",
    "Database",
    "StorageAdapter",
    "MemoryStorage",
]
