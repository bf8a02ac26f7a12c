from fastapi import APIRouter, Depends

from refillia.core.security import get_human_principal
from refillia.schemas.stations import CallerOut

router = APIRouter()


@router.get("", response_model=CallerOut)
async def get_caller(principal=Depends(get_human_principal)) -> CallerOut:
    return CallerOut(subject=principal.subject, role=principal.role, is_privileged=principal.is_privileged)
