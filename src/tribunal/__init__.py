"""Routes chat requests across LLM providers and runs judged model contests."""

__version__ = "0.1.0"

from .config import load_config
from .api import app, configure

from .router import ProviderRouter, resolve
from .service import StreamService
from .retry import with_retry_and_fallback
from .streaming import StreamTransformer, reframe
from .contest import ContestEngine, compute_eliminations
from .runner import TestRunner
