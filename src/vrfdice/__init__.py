"""Game session orchestrator for a VRF dice wagering client."""

from .application.orchestrator import GameOrchestrator, SessionView
from .config import AppConfig
from .domain.models import GamePhase, GameSession, IdentityContext

__version__ = "0.1.0"

__all__ = ["GameOrchestrator", "SessionView", "AppConfig", "GamePhase", "GameSession", "IdentityContext"]
