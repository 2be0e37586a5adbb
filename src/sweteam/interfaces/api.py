"""HTTP transport: FastAPI app served by uvicorn."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict, deque

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from sweteam.config.schema import ApiConfig
from sweteam.interfaces.base import CommandCallback, InterfaceAdapter, MessageCallback

logger = logging.getLogger(__name__)

MAX_OUTBOX = 200


class TaskRequest(BaseModel):
    """Request to start a workflow run."""

    model_config = ConfigDict(frozen=True)

    repo: str = Field(..., min_length=1)
    task: str = Field(..., min_length=1)
    conversation_id: str | None = None


class StopRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: int


class RespondRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = ""


class APIInterface(InterfaceAdapter):
    """Outbound messages are buffered per conversation; clients poll for them."""

    name = "api"

    def __init__(
        self,
        on_task: MessageCallback,
        on_command: CommandCallback | None = None,
        *,
        config: ApiConfig | None = None,
    ) -> None:
        super().__init__(on_task, on_command)
        self.config = config or ApiConfig()
        self.outbox: dict[str, deque[dict[str, object]]] = defaultdict(lambda: deque(maxlen=MAX_OUTBOX))
        self.app = FastAPI(title="SWE Team API", version="0.1.0")
        self._setup_routes()
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None

    def _setup_routes(self) -> None:
        @self.app.post("/task")
        async def create_task(request: TaskRequest) -> dict[str, object]:
            conversation_id = request.conversation_id or f"api-{uuid.uuid4().hex[:12]}"
            await self.on_task(request.repo, request.task, conversation_id)
            return {"conversation_id": conversation_id, "status": "queued"}

        @self.app.get("/runs")
        async def list_runs() -> dict[str, object]:
            return {"runs": await self.run_command("list", [], "__api__")}

        @self.app.get("/status")
        async def status() -> dict[str, object]:
            return {"status": await self.run_command("status", [], "__api__")}

        @self.app.post("/stop")
        async def stop_run(request: StopRequest) -> dict[str, object]:
            return {"status": await self.run_command("stop", [str(request.run_id)], "__api__")}

        @self.app.post("/respond/{conversation_id}")
        async def respond(conversation_id: str, request: RespondRequest) -> dict[str, object]:
            if not self.deliver_response(conversation_id, request.text):
                raise HTTPException(status_code=404, detail="No pending response for this conversation")
            return {"status": "ok"}

        @self.app.get("/messages/{conversation_id}")
        async def messages(conversation_id: str) -> dict[str, object]:
            return {
                "messages": list(self.outbox.get(conversation_id, ())),
                "awaiting_response": self.has_pending_response(conversation_id),
            }

        @self.app.get("/health")
        async def health() -> dict[str, object]:
            return {"status": "ok"}

    async def _deliver(self, conversation_id: str, text: str) -> None:
        self.outbox[conversation_id].append({"text": text, "timestamp": time.time()})

    async def start(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(config)
        self.server_task = asyncio.create_task(self.server.serve())

        for _ in range(50):
            if self.server.started or self.server_task.done():
                break
            await asyncio.sleep(0.1)
        logger.info("API server listening on %s:%s", self.config.host, self.config.port)

    async def stop(self) -> None:
        if self.server:
            if self.server.started:
                self.server.should_exit = True
            elif self.server_task:
                self.server_task.cancel()
        if self.server_task:
            try:
                await self.server_task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.debug("API server teardown error: %s", exc)
        self.server = None
        self.server_task = None
