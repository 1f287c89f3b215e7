"""
Connection Session Routes - הפעלה, QR, ניתוק וביטול של session לחיבור.

כל ה-endpoints דורשים נציג בתפקיד admin.
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_admin_agent
from app.core.exceptions import ConnectionNotFoundError, QrCodeNotAvailableError
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.connection import Connection
from app.db.models.user import User
from app.domain.services.service_factory import get_session_manager
from app.domain.services.session_manager import QrPollStatus

logger = get_logger(__name__)

router = APIRouter()


class InitResponse(BaseModel):
    connection_id: int
    status: str


class TeardownResponse(BaseModel):
    connection_id: int
    had_live_session: bool


class ConnectionStatusResponse(BaseModel):
    connection_id: int
    name: str
    status: str
    lifecycle: str
    initializing: bool
    failures: int
    critical_errors: int


@router.post(
    "/{connection_id}/init",
    response_model=InitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        404: {"description": "Connection not found"},
        409: {"description": "Initialization already in progress"},
        429: {"description": "Too many recent failures, retry later"},
    },
)
async def init_connection(
    connection_id: int,
    admin: User = Depends(require_admin_agent),
) -> InitResponse:
    """
    Start the WhatsApp session of a connection.

    Returns immediately; poll ``/qr`` and ``/status`` for the outcome.
    """
    manager = get_session_manager()
    await manager.initialize_connection(connection_id)
    logger.info(
        "Connection init requested",
        extra_data={"connection_id": connection_id, "user_id": admin.id},
    )
    return InitResponse(
        connection_id=connection_id,
        status=manager.lifecycle_state(connection_id).value,
    )


@router.get(
    "/{connection_id}/qr",
    responses={
        200: {"description": "QR code available", "content": {"application/json": {"example": {"qr_url": "data:image/png;base64,..."}}}},
        202: {"description": "Initialization in progress, no QR yet"},
        404: {"description": "No QR code available"},
    },
)
async def get_qr_code(
    connection_id: int,
    _: User = Depends(require_admin_agent),
):
    """QR polling - בטוח לקריאה חוזרת"""
    poll_status, artifact, last_error = get_session_manager().poll_qr(connection_id)
    if poll_status == QrPollStatus.AVAILABLE:
        return {
            "qr_url": artifact.data_url,
            "created_at": artifact.created_at.isoformat(),
        }
    if poll_status == QrPollStatus.WAITING:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "waiting", "connection_id": connection_id},
        )
    raise QrCodeNotAvailableError(connection_id, last_error)


@router.post("/{connection_id}/disconnect", response_model=TeardownResponse)
async def disconnect_connection(
    connection_id: int,
    admin: User = Depends(require_admin_agent),
) -> TeardownResponse:
    """ניתוק מסודר: logout ואז destroy. אידמפוטנטי."""
    had_session = await get_session_manager().disconnect(connection_id)
    logger.info(
        "Connection disconnect requested",
        extra_data={"connection_id": connection_id, "user_id": admin.id},
    )
    return TeardownResponse(connection_id=connection_id, had_live_session=had_session)


@router.post("/{connection_id}/abort", response_model=TeardownResponse)
async def abort_connection(
    connection_id: int,
    admin: User = Depends(require_admin_agent),
) -> TeardownResponse:
    """ביטול אתחול (destroy בלי logout). אידמפוטנטי."""
    had_session = await get_session_manager().abort(connection_id)
    logger.info(
        "Connection abort requested",
        extra_data={"connection_id": connection_id, "user_id": admin.id},
    )
    return TeardownResponse(connection_id=connection_id, had_live_session=had_session)


@router.get("/{connection_id}/status", response_model=ConnectionStatusResponse)
async def connection_status(
    connection_id: int,
    _: User = Depends(require_admin_agent),
    db: AsyncSession = Depends(get_db),
) -> ConnectionStatusResponse:
    connection = await db.get(Connection, connection_id)
    if connection is None:
        raise ConnectionNotFoundError(connection_id)
    manager = get_session_manager()
    return ConnectionStatusResponse(
        connection_id=connection.id,
        name=connection.name,
        status=connection.status.value,
        lifecycle=manager.lifecycle_state(connection_id).value,
        initializing=manager.is_initializing(connection_id),
        failures=manager.failure_count(connection_id),
        critical_errors=manager.critical_error_count(connection_id),
    )
