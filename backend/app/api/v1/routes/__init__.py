from app.api.v1.routes.conversations import router as conversations_router
from app.api.v1.routes.identities import router as identities_router
from app.api.v1.routes.messages import router as messages_router

__all__ = ["conversations_router", "identities_router", "messages_router"]
