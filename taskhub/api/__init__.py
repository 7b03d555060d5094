"""TaskHub HTTP + WebSocket API (FastAPI)."""

from taskhub.api.app import Container, build_container, create_app

__all__ = ["Container", "build_container", "create_app"]
