from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import FileResponse, StreamingResponse
from typing import Annotated, AsyncIterator, Optional
import asyncio
import structlog

from dynamics_agent.application.chat_service import ChatService
from dynamics_agent.application.schema.events import ChatRequest
from dynamics_agent.domain.streaming.streaming_handler import StreamingHandler

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/dynamics-explorer", tags=["dynamics-explorer"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


async def stream_chat(service: ChatService, chat_request: ChatRequest, user_id: Optional[str]) -> AsyncIterator[str]:
    """Run the chat in a task and relay its events; cancels the task when the client goes away"""

    sink = StreamingHandler(session_id=chat_request.session_id)
    task = asyncio.create_task(service.handle(chat_request, sink, user_id=user_id))
    try:
        async for frame in sink.events():
            yield frame
    finally:
        if not task.done():
            logger.info("Client disconnected, cancelling chat", session_id=chat_request.session_id)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


@router.post("/chat")
async def chat(
    chat_request: ChatRequest,
    service: Annotated[ChatService, Depends(get_chat_service)],
    x_user_id: Annotated[Optional[str], Header()] = None
):
    """Streamed agentic chat over the CRM"""

    return StreamingResponse(
        stream_chat(service, chat_request, x_user_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS
    )


@router.get("/exports/{filename}")
async def download_export(filename: str, service: Annotated[ChatService, Depends(get_chat_service)]):
    """Download a previously generated export"""

    path = service.export_writer.resolve(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="Export not found")
    return FileResponse(path, media_type="text/csv", filename=filename)
