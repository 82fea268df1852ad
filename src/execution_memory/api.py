"""FastAPI HTTP surface for execution memory queries."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from execution_memory.analytics import EXPORT_FORMATS, export_report
from execution_memory.config import MemoryConfig
from execution_memory.errors import StorageUnavailable
from execution_memory.memory import MemoryManager
from execution_memory.models import StoreExecutionRequest

logger = logging.getLogger(__name__)


class ApiState:
	"""Shared state for the API app: one manager, one lock serialising store access."""

	def __init__(self, manager: MemoryManager, owned: bool) -> None:
		self.manager = manager
		self.owned = owned
		self.lock = asyncio.Lock()

	def close(self) -> None:
		if self.owned:
			self.manager.close()


def create_app(config: MemoryConfig | None = None, manager: MemoryManager | None = None) -> FastAPI:
	"""Factory: build the execution-memory FastAPI app.

	Pass a manager to serve an already-open store (it is left open on
	shutdown); otherwise the store named by config is opened in the
	lifespan and closed afterwards.
	"""

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		if manager is not None:
			app.state.api = ApiState(manager, owned=False)
		else:
			app.state.api = ApiState(MemoryManager.open(config), owned=True)
		yield
		app.state.api.close()

	app = FastAPI(title="Execution Memory", lifespan=lifespan)

	@app.exception_handler(StorageUnavailable)
	async def storage_unavailable(request: Request, exc: StorageUnavailable):
		logger.error("Store unavailable while serving %s: %s", request.url.path, exc)
		return JSONResponse({"error": str(exc)}, status_code=503)

	def _state(request: Request) -> ApiState:
		return request.app.state.api

	@app.get("/api/search")
	async def search(request: Request, q: str, limit: int | None = Query(default=None, ge=0)):
		state = _state(request)
		async with state.lock:
			results = state.manager.search(q, limit)
		return JSONResponse({"query": q, "results": [r.to_dict() for r in results]})

	@app.get("/api/search/advanced")
	async def search_advanced(request: Request, q: str, limit: int | None = Query(default=None, ge=0)):
		state = _state(request)
		async with state.lock:
			results = state.manager.search_advanced(q, limit)
		return JSONResponse({"query": q, "results": [r.to_dict() for r in results]})

	@app.get("/api/stats")
	async def stats(request: Request):
		state = _state(request)
		async with state.lock:
			result = state.manager.get_stats()
		return JSONResponse(result.to_dict())

	@app.get("/api/analytics")
	async def analytics(request: Request, format: str = "json"):
		if format not in EXPORT_FORMATS:
			raise HTTPException(status_code=400, detail=f"format must be one of {EXPORT_FORMATS}")
		state = _state(request)
		async with state.lock:
			report = state.manager.get_analytics()
		if format == "csv":
			return PlainTextResponse(export_report(report, "csv"), media_type="text/csv")
		return JSONResponse(report.to_dict())

	@app.get("/api/queries")
	async def query_analytics(request: Request, q: str):
		state = _state(request)
		async with state.lock:
			result = state.manager.get_query_analytics(q)
		if result is None:
			raise HTTPException(status_code=404, detail=f"No search history for {q!r}")
		return JSONResponse(result.to_dict())

	@app.get("/api/weights")
	async def get_weights(request: Request):
		return JSONResponse(_state(request).manager.get_weights())

	@app.patch("/api/weights")
	async def patch_weights(request: Request, weights: dict[str, float]):
		state = _state(request)
		try:
			async with state.lock:
				updated = state.manager.update_weights(weights)
		except ValueError as exc:
			raise HTTPException(status_code=400, detail=str(exc)) from exc
		return JSONResponse(updated)

	@app.get("/api/executions/{execution_id}")
	async def get_execution(request: Request, execution_id: int):
		state = _state(request)
		async with state.lock:
			context = state.manager.get_execution_context(execution_id)
		if context is None:
			raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
		return JSONResponse(asdict(context))

	@app.post("/api/executions", status_code=201)
	async def post_execution(request: Request, body: StoreExecutionRequest):
		state = _state(request)
		try:
			async with state.lock:
				execution_id = state.manager.store_request(body)
		except ValueError as exc:
			raise HTTPException(status_code=422, detail=str(exc)) from exc
		return JSONResponse({"id": execution_id}, status_code=201)

	return app
