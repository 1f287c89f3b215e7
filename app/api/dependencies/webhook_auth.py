"""
אימות webhook נכנס מה-WhatsApp gateway.

הגטוויי שולח את הכותרת ``X-Gateway-Token`` עם הסוד המשותף
``WHATSAPP_GATEWAY_TOKEN`` בכל אירוע.

שימוש:
    @router.post("/webhook")
    async def gateway_webhook(
        ...,
        _: None = Depends(verify_gateway_webhook_token),
    ):
        ...
"""
import hmac

from fastapi import Header, HTTPException, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def verify_gateway_webhook_token(
    x_gateway_token: str | None = Header(None),
) -> None:
    """
    אימות ``X-Gateway-Token`` בבקשות webhook מהגטוויי.

    - אם ``WHATSAPP_GATEWAY_TOKEN`` לא מוגדר, מדלג (אזהרה בלוג ב-startup).
    - אם הכותרת חסרה או לא תואמת: 403 Forbidden.
    """
    expected = settings.WHATSAPP_GATEWAY_TOKEN
    if not expected:
        return

    if not x_gateway_token:
        logger.warning("Gateway webhook without X-Gateway-Token header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="חסר טוקן אימות webhook",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(x_gateway_token, expected):
        logger.warning("Gateway webhook with wrong token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="טוקן אימות webhook לא תקין",
        )
