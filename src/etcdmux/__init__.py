from . import client as _client
from . import errors as _errors
from . import lease as _lease
from . import types as _types
from . import watch as _watch

__all__ = (
    *_client.__all__,
    *_errors.__all__,
    *_types.__all__,
    'LeaseKeepAliveHandle',
    'WatchHandle',
)

from .client import *  # noqa
from .errors import *  # noqa
from .types import *  # noqa
from .lease import LeaseKeepAliveHandle  # noqa
from .watch import WatchHandle  # noqa

__version__ = '0.1.0'
