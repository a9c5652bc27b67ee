from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from sqlmodel import Session

from carslab_crm.api.deps import authenticate_tablet, get_db
from carslab_crm.core.exceptions import UnauthorizedTabletException
from carslab_crm.core.logging_setup import logger
from carslab_crm.services.tablet import TabletManagementService
from carslab_crm.services.tablet_connections import tablet_connections, websocket_message

router = APIRouter(tags=["tablets"])


@router.websocket("/ws/tablet/{tablet_id}")
async def tablet_socket(
    websocket: WebSocket,
    tablet_id: UUID,
    token: str = Query(...),
    session: Session = Depends(get_db),
) -> None:
    """Push channel for a paired tablet.

    Messages are ``{"type": ..., "payload": {...}}``. The server sends
    ``connection`` once, ``heartbeat`` in reply to each client heartbeat,
    ``signature_request`` and ``session_cancelled`` as sessions change.
    """
    try:
        tablet = await run_in_threadpool(authenticate_tablet, token, session)
    except UnauthorizedTabletException as exc:
        logger.warning("Rejected websocket for tablet %s: %s", tablet_id, exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if tablet.id != tablet_id:
        logger.warning("Websocket token of tablet %s used for tablet %s", tablet.id, tablet_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    service = TabletManagementService(session)
    await websocket.accept()
    tablet_connections.connect(tablet_id, websocket)
    try:
        heartbeat = await run_in_threadpool(service.heartbeat, tablet)
        await websocket.send_json(
            websocket_message("connection", {**heartbeat.model_dump(mode="json"), "connected": True})
        )
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json(websocket_message("error", {"message": "Invalid JSON"}))
                continue

            message_type = message.get("type") if isinstance(message, dict) else None
            if message_type == "heartbeat":
                payload = message.get("payload")
                device_info = payload.get("device_info") if isinstance(payload, dict) else None
                heartbeat = await run_in_threadpool(service.heartbeat, tablet, device_info)
                await websocket.send_json(websocket_message("heartbeat", heartbeat.model_dump(mode="json")))
            else:
                await websocket.send_json(
                    websocket_message("error", {"message": f"Unsupported message type: {message_type}"})
                )
    except WebSocketDisconnect:
        logger.info("Tablet %s disconnected from websocket", tablet_id)
    finally:
        tablet_connections.disconnect(tablet_id, websocket)
