"""An OpenAI-compatible proxy for the anonymous chat backend."""

__version__ = "0.1.0"

from .config import load_config
from .api import create_app
from .session import SessionState

from .proof_of_work import solve
from .streaming import EventStreamDecoder, iter_messages, is_heartbeat
from .refresher import TokenRefresher, RefreshLoop
from .completions import CompletionAccumulator, CompletionResponder
