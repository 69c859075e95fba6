from typing import Annotated, Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.repositories.db import SessionLocal
from app.services.flow_runtime import FlowRuntime, get_flow_runtime


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_runtime() -> FlowRuntime:
    """Runtime compartilhado (locks e scheduler são do processo)."""
    return get_flow_runtime()


def require_admin_token(x_admin_token: Annotated[Optional[str], Header()] = None) -> None:
    expected = (settings.ADMIN_API_TOKEN or "").strip()
    if not expected:
        # sem token configurado, só fora de produção
        if (settings.APP_ENV or "").lower() == "prod":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin_token_not_configured")
        return
    if (x_admin_token or "").strip() != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_admin_token")
