"""
Runtime singletons / shared state.

But: le contrôleur de l'onglet observateur démarré par FastAPI au startup
doit être accessible aux routes sans dépendance circulaire sur
`sessionsync.main`.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .auth_session import AuthSessionController

# Instance réellement démarrée par `sessionsync.main` au startup.
controller: Optional["AuthSessionController"] = None
