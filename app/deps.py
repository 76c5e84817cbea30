from __future__ import annotations

from typing import Annotated, TypeAlias

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_db


def get_actor_id(
    x_actor_id: Annotated[int | None, Header(ge=1)] = None,
) -> int | None:
    """Operator id forwarded by the admin front end, recorded in the audit log.

    Authentication happens upstream; requests without the header are audited
    as system actions.
    """
    return x_actor_id


DbDep: TypeAlias = Annotated[AsyncSession, Depends(get_db)]
ActorDep: TypeAlias = Annotated[int | None, Depends(get_actor_id)]
