from fastapi import APIRouter, Depends

from app.core.deps import get_catalog
from app.schemas.evaluation_job import RubricResponse
from app.services.rubric_catalog import Rubric, RubricCatalog

router = APIRouter(prefix="/procedures", tags=["Procedures"])


def _to_response(rubric: Rubric) -> RubricResponse:
    return RubricResponse(
        procedure_id=rubric.procedure_id,
        name=rubric.name,
        steps=[{"key": s.key, "name": s.name, "goal_time": s.goal_time} for s in rubric.steps],
        difficulty_levels=rubric.difficulty_levels,
    )


@router.get("/", response_model=list[RubricResponse])
def list_procedures(catalog: RubricCatalog = Depends(get_catalog)):
    """List the procedures that can be evaluated, with their rubric steps."""
    return [_to_response(rubric) for rubric in catalog.list_rubrics()]


@router.get("/{procedure_id}", response_model=RubricResponse)
def get_procedure(procedure_id: str, catalog: RubricCatalog = Depends(get_catalog)):
    return _to_response(catalog.get_rubric(procedure_id))
