# asset_converter/routers/operator.py
from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request
from typing import Optional
import hmac, logging, os

router = APIRouter(tags=["operator"])
logger = logging.getLogger("asset_converter.operator")


def _exit(code: int) -> None:
    logger.warning("Operator restart: exiting with status %s", code)
    os._exit(code)


@router.post("/restart")
def restart(
    request: Request,
    background: BackgroundTasks,
    x_operator_token: Optional[str] = Header(default=None),
):
    """
    Kill the whole service so the supervisor brings it back up. Jobs in flight
    and the in-memory registry are lost.
    """
    settings = request.app.state.settings
    expected = settings.OPERATOR_TOKEN
    if not expected or not x_operator_token or not hmac.compare_digest(x_operator_token, expected):
        raise HTTPException(status_code=403, detail="Forbidden")

    background.add_task(_exit, settings.RESTART_EXIT_CODE)
    return {"status": "RESTARTING"}
