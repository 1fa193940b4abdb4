"""
Rubric Catalog: procedure id -> ordered evaluation steps and difficulty scale.

Loaded once from app/data/rubrics.json and read-only afterwards. The step key
is the join key between a rubric and an evaluation result, so duplicate keys
within a rubric are rejected at load time.
"""

import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from app.core.exceptions import ProcedureNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_RUBRIC_PATH = Path(__file__).resolve().parent.parent / "data" / "rubrics.json"


@dataclass(frozen=True)
class RubricStep:
    key: str
    name: str
    goal_time: Optional[str] = None


@dataclass(frozen=True)
class Rubric:
    procedure_id: str
    name: str
    steps: Tuple[RubricStep, ...]
    difficulty_levels: Dict[int, str] = field(default_factory=dict)

    @property
    def step_keys(self) -> List[str]:
        return [step.key for step in self.steps]

    def step_name(self, key: str) -> str:
        for step in self.steps:
            if step.key == key:
                return step.name
        return key


class RubricCatalog:
    """In-memory, read-only lookup of rubrics by procedure id."""

    def __init__(self, rubrics: List[Rubric]):
        self._rubrics: Dict[str, Rubric] = {}
        for rubric in rubrics:
            keys = rubric.step_keys
            if len(keys) != len(set(keys)):
                raise ValueError(f"Rubric '{rubric.procedure_id}' has duplicate step keys")
            if rubric.procedure_id in self._rubrics:
                raise ValueError(f"Duplicate rubric for procedure '{rubric.procedure_id}'")
            self._rubrics[rubric.procedure_id] = rubric

    @classmethod
    def from_file(cls, path: Path = DEFAULT_RUBRIC_PATH) -> "RubricCatalog":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "RubricCatalog":
        scales = {
            name: {int(level): text for level, text in levels.items()}
            for name, levels in data.get("difficulty_scales", {}).items()
        }
        rubrics = []
        for entry in data["procedures"]:
            scale_name = entry.get("difficulty_scale", "standard")
            rubrics.append(Rubric(
                procedure_id=entry["procedure_id"],
                name=entry["name"],
                steps=tuple(RubricStep(**step) for step in entry["steps"]),
                difficulty_levels=dict(scales.get(scale_name, {})),
            ))
        logger.info(f"Loaded {len(rubrics)} procedure rubrics")
        return cls(rubrics)

    def get_rubric(self, procedure_id: str) -> Rubric:
        """
        Raises:
            ProcedureNotFoundError: If the procedure id is unknown
        """
        rubric = self._rubrics.get(procedure_id)
        if rubric is None:
            raise ProcedureNotFoundError(procedure_id)
        return rubric

    def has_procedure(self, procedure_id: str) -> bool:
        return procedure_id in self._rubrics

    def list_rubrics(self) -> List[Rubric]:
        return list(self._rubrics.values())


@lru_cache(maxsize=1)
def get_rubric_catalog() -> RubricCatalog:
    """Process-wide catalog, loaded on first use."""
    return RubricCatalog.from_file()
