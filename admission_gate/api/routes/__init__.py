from __future__ import annotations

from admission_gate.api.routes.admission import router as admission_router
from admission_gate.api.routes.health import router as health_router

__all__ = ["admission_router", "health_router"]
