"""
Support Desk - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, init_db
from app.domain.services.service_factory import get_services, shutdown_services

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "Connections",
        "description": "חיבורי WhatsApp: אתחול session, QR, ניתוק וביטול.",
    },
    {
        "name": "Tickets",
        "description": "פניות: שינוי סטטוס, העברה בין מחלקות ושליחת הודעות נציג.",
    },
    {"name": "Messages", "description": "שליחה חוזרת של הודעות שלא נשלחו."},
    {"name": "Chatbot", "description": "טקסטים של הבוט (פתיחה, תפריט, סגירה)."},
    {"name": "Agents", "description": "heartbeat של נציגים לחלוקה אוטומטית."},
    {"name": "Webhooks", "description": "Webhook לקבלת אירועים מה-WhatsApp gateway."},
    {
        "name": "Admin Debug",
        "description": "כלי דיאגנוסטיקה לאדמין: sessions, טיימרים, cooldowns וטוקנים.",
    },
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "מערכת תמיכה מרובת-חיבורים מעל WhatsApp: ניהול sessions, "
        "בחירת מחלקה אוטומטית ופתיחת פניות לנציגים."
    ),
    docs_url=None,  # משתמשים ב-endpoint מותאם במקום
    redoc_url=None,
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging, CORS, rate limit)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables and core services on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await init_db()
    logger.info("Database tables initialized")
    get_services()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    # פירוק sessions פתוחים וביטול טיימרים
    await shutdown_services()
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקה של כל התלויות: DB, Redis, WhatsApp Gateway, Celery broker. "
        "מחזיר status=healthy אם הכל תקין, או status=degraded עם פירוט השגיאה."
    ),
    responses={
        200: {
            "description": "כל התלויות תקינות",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "redis": "ok",
                        "whatsapp_gateway": "ok",
                        "celery": "ok",
                        "sessions": {"registered": 2, "connected": 2, "initializing": 0},
                    }
                }
            },
        },
        503: {"description": "לפחות תלות אחת לא זמינה"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness(get_services().session_manager.snapshot())
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)


@app.get("/docs", include_in_schema=False)
async def swagger_ui_html() -> HTMLResponse:
    return get_swagger_ui_html(
        openapi_url=app.openapi_url or "/openapi.json",
        title=f"{app.title} - תיעוד API (Swagger UI)",
        swagger_ui_parameters={"displayRequestDuration": True, "deepLinking": True},
    )


@app.get("/redoc", include_in_schema=False)
async def redoc_html():
    """
    ReDoc documentation endpoint.

    משתמש ב-unpkg במקום jsdelivr כדי למנוע בעיות טעינה שגורמות לדף ריק.
    """
    return get_redoc_html(
        openapi_url=app.openapi_url,
        title=f"{app.title} - ReDoc",
        redoc_js_url="https://unpkg.com/redoc@latest/bundles/redoc.standalone.js",
    )
