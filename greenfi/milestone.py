import logging
from decimal import Decimal
from typing import Union

from sqlalchemy.orm import Session

from .database import commit
from .models import Project

logger = logging.getLogger(__name__)

Amount = Union[int, str, None]


def to_int(value: Amount) -> int:
    """uint256 decimal string (or int) -> int; empty means zero."""
    if value is None or value == "":
        return 0
    return int(value)


def evaluate(funds: Amount, goal: Amount, reached: bool) -> bool:
    """
    True when the milestone is *newly* reached: funds >= goal, goal > 0 and
    the flag was not yet set. The flag is a latch; this never asks for a reset.
    """
    f, g = to_int(funds), to_int(goal)
    return not reached and g > 0 and f >= g


def progress_percent(funds: Amount, goal: Amount) -> float:
    f, g = to_int(funds), to_int(goal)
    if g <= 0:
        return 0.0
    pct = Decimal(f) * 100 / Decimal(g)
    return float(min(pct, Decimal(100)))


def check_and_update_milestone(db: Session, project_id: int) -> bool:
    project = db.get(Project, project_id)
    if project is None:
        return False
    if not evaluate(project.funds, project.funding_goal, bool(project.milestone_reached)):
        return False

    project.milestone_reached = True
    commit(db)
    logger.info(f"Milestone reached for project {project_id} ({project.funds}/{project.funding_goal})")
    return True
