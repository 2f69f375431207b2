"""
Schedule management API endpoints.
"""

import logging
from typing import Any

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobs_engine.engine import Engine, EngineDep
from jobs_engine.infra.database import SessionDep
from jobs_engine.v1.core.exceptions import create_success_response
from jobs_engine.v1.schedules.models import JobSchedule
from jobs_engine.v1.schedules.schemas import ScheduleCreate, ScheduleResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/schedules", tags=["schedules"])


def _dump(schedule: JobSchedule) -> dict[str, Any]:
    return ScheduleResponse.model_validate(schedule).model_dump(
        mode="json", by_alias=True
    )


@router.post("", response_model=dict, status_code=201)
async def create_schedule(
    schedule_create: ScheduleCreate,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    """Create a recurring schedule."""
    schedule = await engine.schedules.create(session, schedule_create)
    return create_success_response(data=_dump(schedule), message="Schedule created")


@router.get("", response_model=dict)
async def list_schedules(
    enabled: bool | None = Query(default=None, description="Filter by enabled flag"),
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    schedules = await engine.schedules.list_schedules(session, enabled=enabled)
    return create_success_response(data=[_dump(s) for s in schedules])


@router.get("/{name}", response_model=dict)
async def get_schedule(
    name: str,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    schedule = await engine.schedules.get_by_name(session, name)
    return create_success_response(data=_dump(schedule))


@router.post("/{name}/enable", response_model=dict)
async def enable_schedule(
    name: str,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    schedule = await engine.schedules.set_enabled(session, name, True)
    return create_success_response(data=_dump(schedule), message="Schedule enabled")


@router.post("/{name}/disable", response_model=dict)
async def disable_schedule(
    name: str,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    schedule = await engine.schedules.set_enabled(session, name, False)
    return create_success_response(data=_dump(schedule), message="Schedule disabled")


@router.delete("/{name}", response_model=dict)
async def delete_schedule(
    name: str,
    session: AsyncSession = SessionDep,
    engine: Engine = EngineDep,
) -> dict[str, Any]:
    await engine.schedules.delete(session, name)
    return create_success_response(data={"name": name}, message="Schedule deleted")
