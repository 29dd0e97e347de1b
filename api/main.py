"""
FastAPI application for running and inspecting order sagas.

This application provides:
1. A demo endpoint that runs an order fulfillment scenario (/demo/order-saga)
2. Inspection endpoints for saga instances and dead letters

Every scenario runs on a fresh in-process system. Finished systems are kept
in a run history so their sagas and dead letters stay inspectable.

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
)

from event_fabric.saga import SagaInstance
from event_fabric.system import SCENARIOS, FabricSystem, execute_scenario


# Response models
class SagaRunResult(BaseModel):
    """Result of running a demo scenario."""
    scenario: str
    order_id: str
    correlation_id: str
    saga_state: Optional[str]
    order_status: Optional[str]
    events: list[str]
    dead_letters: int
    notifications: list[str]


class RunHistory:
    """Systems of finished demo runs, newest last."""

    def __init__(self, limit: int = 50):
        self.limit = limit
        self._systems: list[FabricSystem] = []
        self._lock = threading.Lock()

    def add(self, system: FabricSystem) -> None:
        with self._lock:
            self._systems.append(system)
            del self._systems[: -self.limit]

    def systems(self) -> list[FabricSystem]:
        with self._lock:
            return list(self._systems)

    def clear(self) -> None:
        with self._lock:
            self._systems.clear()


history = RunHistory()


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logging.info("Starting Event Fabric Saga API")
    yield
    logging.info("Shutting down")


# Create the FastAPI app
app = FastAPI(
    title="Event Fabric Saga API",
    description="""
    Run order fulfillment sagas on an in-process event fabric and inspect them.

    ## Endpoints

    - `/demo/order-saga` - Run a scenario (success, inventory-failure, ...)
    - `/sagas` - Saga instances from previous runs
    - `/dead-letters` - Dead letters from previous runs
    """,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "event-fabric"}


# =============================================================================
# Demo Endpoints
# =============================================================================

@app.get("/demo/scenarios", tags=["Demo"])
def list_scenarios():
    """Available scenarios."""
    return [{"name": s.name, "description": s.description} for s in SCENARIOS.values()]


@app.post("/demo/order-saga", response_model=SagaRunResult, tags=["Demo"])
def demo_order_saga(scenario: str = "success", order_id: Optional[str] = None):
    """
    Run an order fulfillment scenario.

    The ordering service places an order; inventory, payment and
    notification react to events; the saga coordinator completes the saga or
    compensates it. Returns once the saga is terminal.
    """
    if scenario not in SCENARIOS:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown scenario '{scenario}'. Valid: {sorted(SCENARIOS)}",
        )

    system, result = execute_scenario(SCENARIOS[scenario], order_id or f"ord-{uuid4().hex[:8]}")
    history.add(system)
    return SagaRunResult(**result.to_dict())


# =============================================================================
# Inspection Endpoints
# =============================================================================

def _all_sagas() -> list[SagaInstance]:
    sagas = []
    for system in history.systems():
        sagas.extend(system.coordinator.store.list())
    return sagas


@app.get("/sagas", tags=["Inspection"])
def get_sagas(state: Optional[str] = None) -> list[dict[str, Any]]:
    """Saga instances, optionally filtered by state (e.g. FAILED)."""
    sagas = _all_sagas()
    if state:
        sagas = [s for s in sagas if s.state.value == state.upper()]
    return [s.to_dict() for s in sagas]


@app.get("/sagas/{correlation_id}", tags=["Inspection"])
def get_saga(correlation_id: str) -> dict[str, Any]:
    """One saga instance by correlation id."""
    for system in history.systems():
        instance = system.coordinator.get(correlation_id)
        if instance is not None:
            return instance.to_dict()
    raise HTTPException(status_code=404, detail=f"Saga not found: {correlation_id}")


@app.get("/dead-letters", tags=["Inspection"])
def get_dead_letters(handler_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Dead letters from every run, optionally for one handler."""
    letters = []
    for system in history.systems():
        if handler_id:
            letters.extend(system.dead_letters.find_by_handler(handler_id))
        else:
            letters.extend(system.dead_letters.letters)
    return [letter.to_dict() for letter in letters]
