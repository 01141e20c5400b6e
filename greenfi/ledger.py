"""
Off-chain mirror of the GreenFi contract.

Projects, stakes and withdrawals are written once per confirmed on-chain
transaction. Amounts are uint256 values kept as base-10 strings; every sum
below is done with Python ints so nothing is rounded.

Transaction hashes, block numbers and amounts are taken from the caller as-is.
Nothing here checks them against a node.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .database import commit
from .errors import NotFoundError, PersistenceError, ValidationError
from .milestone import check_and_update_milestone, progress_percent, to_int
from .models import Project, Stake, Withdrawal, utcnow
from .schemas import normalize_address, normalize_amount

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18
DEFAULT_ACTIVITY_LIMIT = 20


def _short(address: Optional[str]) -> str:
    return f"{address[:6]}..." if address else ""


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def format_eth(amount_wei) -> str:
    return f"{Decimal(to_int(amount_wei)) / WEI_PER_ETH:,.4f}"


# ---------------------------
# Serialisation
# ---------------------------
def project_to_dict(p: Project) -> Dict[str, Any]:
    return {
        "id": p.id,
        "owner": p.owner,
        "name": p.name,
        "description": p.description or "",
        "funds": p.funds or "0",
        "funding_goal": p.funding_goal or "0",
        "milestone_reached": bool(p.milestone_reached),
        "tx_hash": p.tx_hash,
        "block_number": p.block_number,
        "created_at": _iso(p.created_at),
        "updated_at": _iso(p.updated_at),
    }


def stake_to_dict(s: Stake) -> Dict[str, Any]:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "staker": s.staker,
        "amount": s.amount,
        "tx_hash": s.tx_hash,
        "block_number": s.block_number,
        "created_at": _iso(s.created_at),
    }


def withdrawal_to_dict(w: Withdrawal) -> Dict[str, Any]:
    return {
        "id": w.id,
        "project_id": w.project_id,
        "withdrawer": w.withdrawer,
        "amount": w.amount,
        "milestone_marked": bool(w.milestone_marked),
        "tx_hash": w.tx_hash,
        "block_number": w.block_number,
        "created_at": _iso(w.created_at),
    }


def _aggregates(db: Session, project_ids: List[int]) -> Dict[int, Dict[str, Any]]:
    """Per-project stake/withdrawal totals; projects without rows get zeros."""
    totals = {
        pid: {"staked": 0, "stakers": set(), "withdrawals": 0, "withdrawn": 0}
        for pid in project_ids
    }
    if project_ids:
        rows = db.execute(
            select(Stake.project_id, Stake.staker, Stake.amount).where(
                Stake.project_id.in_(project_ids)
            )
        )
        for pid, staker, amount in rows:
            totals[pid]["staked"] += to_int(amount)
            totals[pid]["stakers"].add(staker)

        rows = db.execute(
            select(Withdrawal.project_id, Withdrawal.amount).where(
                Withdrawal.project_id.in_(project_ids)
            )
        )
        for pid, amount in rows:
            totals[pid]["withdrawals"] += 1
            totals[pid]["withdrawn"] += to_int(amount)

    return {
        pid: {
            "total_staked": str(t["staked"]),
            "staker_count": len(t["stakers"]),
            "withdrawal_count": t["withdrawals"],
            "total_withdrawn": str(t["withdrawn"]),
        }
        for pid, t in totals.items()
    }


def _with_aggregates(db: Session, projects: Iterable[Project]) -> List[Dict[str, Any]]:
    projects = list(projects)
    agg = _aggregates(db, [p.id for p in projects])
    return [{**project_to_dict(p), **agg[p.id]} for p in projects]


def _require_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found")
    return project


# ---------------------------
# Writes
# ---------------------------
def upsert_project(
    db: Session,
    id: Optional[int],
    owner: Optional[str],
    name: Optional[str],
    description: str = "",
    funds="0",
    milestone_reached: bool = False,
    tx_hash: Optional[str] = None,
    block_number: Optional[int] = None,
    funding_goal="0",
) -> Tuple[Project, bool]:
    """
    Insert a project, or update funds / milestone flag / funding goal of an
    existing one. Name, owner, description and creation tx are never rewritten.
    Returns (project, created).
    """
    if id is None or not owner or not name:
        raise ValidationError("Missing required fields: id, owner, name")

    owner = normalize_address(owner)
    try:
        funds = normalize_amount(funds, "funds")
        funding_goal = normalize_amount(funding_goal, "funding_goal")
    except ValueError as e:
        raise ValidationError(str(e))

    project = db.get(Project, id)
    created = project is None
    if created:
        project = Project(
            id=id,
            owner=owner,
            name=name,
            description=description or "",
            funds=funds,
            funding_goal=funding_goal,
            milestone_reached=bool(milestone_reached),
            tx_hash=tx_hash,
            block_number=block_number,
        )
        db.add(project)
        try:
            db.flush()
        except IntegrityError:
            # another writer inserted the same id after our read
            db.rollback()
            logger.info(f"Project #{id} was inserted concurrently; updating instead")
            project = db.get(Project, id)
            if project is None:
                raise PersistenceError(f"Project #{id} could not be inserted")
            created = False

    if not created:
        project.funds = funds
        project.funding_goal = funding_goal
        # latched: a later upsert cannot clear it
        project.milestone_reached = bool(project.milestone_reached) or bool(milestone_reached)
        project.updated_at = utcnow()

    commit(db)
    logger.info(
        f"{'Created' if created else 'Updated'} project #{id} "
        f"owner={_short(owner)} goal={funding_goal}"
    )
    check_and_update_milestone(db, id)
    return project, created


def record_stake(
    db: Session,
    project_id: int,
    staker: str,
    amount,
    tx_hash: Optional[str] = None,
    block_number: Optional[int] = None,
) -> Stake:
    project = _require_project(db, project_id)
    try:
        amount = normalize_amount(amount)
    except ValueError as e:
        raise ValidationError(str(e))

    stake = Stake(
        project_id=project_id,
        staker=normalize_address(staker),
        amount=amount,
        tx_hash=tx_hash,
        block_number=block_number,
    )
    db.add(stake)
    db.flush()

    # Rebuilt from every stake row, not incremented
    amounts = db.scalars(select(Stake.amount).where(Stake.project_id == project_id))
    project.funds = str(sum(to_int(a) for a in amounts))
    commit(db)

    logger.info(
        f"Stake of {amount} wei on project #{project_id} by {_short(stake.staker)}; "
        f"funds now {project.funds}"
    )
    check_and_update_milestone(db, project_id)
    return stake


def record_withdrawal(
    db: Session,
    project_id: int,
    withdrawer: str,
    amount,
    milestone: bool = False,
    tx_hash: Optional[str] = None,
    block_number: Optional[int] = None,
) -> Withdrawal:
    project = _require_project(db, project_id)
    try:
        amount = normalize_amount(amount)
    except ValueError as e:
        raise ValidationError(str(e))

    if milestone:
        # caller-asserted; not checked against funds
        project.milestone_reached = True

    withdrawal = Withdrawal(
        project_id=project_id,
        withdrawer=normalize_address(withdrawer),
        amount=amount,
        milestone_marked=bool(milestone),
        tx_hash=tx_hash,
        block_number=block_number,
    )
    db.add(withdrawal)
    commit(db)

    logger.info(
        f"Withdrawal of {amount} wei from project #{project_id} by {_short(withdrawal.withdrawer)}"
    )
    return withdrawal


# ---------------------------
# Reads
# ---------------------------
def _newest_projects():
    return select(Project).order_by(Project.created_at.desc(), Project.id.desc())


def get_project(db: Session, project_id: int) -> Dict[str, Any]:
    project = _require_project(db, project_id)
    return _with_aggregates(db, [project])[0]


def list_projects(db: Session) -> List[Dict[str, Any]]:
    return _with_aggregates(db, db.scalars(_newest_projects()))


def list_by_owner(db: Session, address: str) -> List[Dict[str, Any]]:
    stmt = _newest_projects().where(func.lower(Project.owner) == normalize_address(address))
    return _with_aggregates(db, db.scalars(stmt))


def search_projects(db: Session, query: str) -> List[Dict[str, Any]]:
    term = f"%{query}%"
    stmt = _newest_projects().where(
        or_(
            Project.name.ilike(term),
            Project.description.ilike(term),
            Project.owner.ilike(term),
        )
    )
    return _with_aggregates(db, db.scalars(stmt))


def list_stakes_by_project(db: Session, project_id: int) -> List[Dict[str, Any]]:
    stmt = (
        select(Stake)
        .where(Stake.project_id == project_id)
        .order_by(Stake.created_at.desc(), Stake.id.desc())
    )
    return [stake_to_dict(s) for s in db.scalars(stmt)]


def list_stakes_by_staker(db: Session, address: str) -> List[Dict[str, Any]]:
    stmt = (
        select(Stake, Project)
        .join(Project, Stake.project_id == Project.id)
        .where(func.lower(Stake.staker) == normalize_address(address))
        .order_by(Stake.created_at.desc(), Stake.id.desc())
    )
    return [
        {
            **stake_to_dict(s),
            "project_name": p.name,
            "project_owner": p.owner,
            "project_milestone_reached": bool(p.milestone_reached),
            "project_funding_goal": p.funding_goal,
        }
        for s, p in db.execute(stmt)
    ]


def list_withdrawals_by_project(db: Session, project_id: int) -> List[Dict[str, Any]]:
    stmt = (
        select(Withdrawal)
        .where(Withdrawal.project_id == project_id)
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
    )
    return [withdrawal_to_dict(w) for w in db.scalars(stmt)]


def list_withdrawals_by_withdrawer(db: Session, address: str) -> List[Dict[str, Any]]:
    stmt = (
        select(Withdrawal, Project)
        .join(Project, Withdrawal.project_id == Project.id)
        .where(func.lower(Withdrawal.withdrawer) == normalize_address(address))
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
    )
    return [
        {**withdrawal_to_dict(w), "project_name": p.name, "project_owner": p.owner}
        for w, p in db.execute(stmt)
    ]


def recent_activity(db: Session, limit: int = DEFAULT_ACTIVITY_LIMIT) -> List[Dict[str, Any]]:
    """Stakes, withdrawals and project creations merged, newest first."""
    if not limit or limit <= 0:
        limit = DEFAULT_ACTIVITY_LIMIT

    activities = []

    stakes = db.execute(
        select(Stake, Project.name)
        .join(Project, Stake.project_id == Project.id)
        .order_by(Stake.created_at.desc(), Stake.id.desc())
        .limit(limit)
    )
    for s, project_name in stakes:
        activities.append((s.created_at, {
            **stake_to_dict(s),
            "project_name": project_name,
            "activity_type": "stake",
            "description": f"Staked {format_eth(s.amount)} ETH",
            "timestamp": _iso(s.created_at),
        }))

    withdrawals = db.execute(
        select(Withdrawal, Project.name)
        .join(Project, Withdrawal.project_id == Project.id)
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
        .limit(limit)
    )
    for w, project_name in withdrawals:
        activities.append((w.created_at, {
            **withdrawal_to_dict(w),
            "project_name": project_name,
            "activity_type": "withdrawal",
            "description": f"Withdrew {format_eth(w.amount)} ETH",
            "timestamp": _iso(w.created_at),
        }))

    for p in db.scalars(_newest_projects().limit(limit)):
        activities.append((p.created_at, {
            **project_to_dict(p),
            "activity_type": "project_created",
            "description": f"Created project: {p.name}",
            "timestamp": _iso(p.created_at),
        }))

    activities.sort(key=lambda item: item[0], reverse=True)
    return [a for _, a in activities[:limit]]


# ---------------------------
# Stats
# ---------------------------
def _count(db: Session, stmt) -> int:
    return int(db.scalar(stmt) or 0)


def _sum(amounts: Iterable) -> int:
    return sum(to_int(a) for a in amounts)


def aggregate_stats(db: Session) -> Dict[str, Any]:
    stake_amounts = db.scalars(select(Stake.amount)).all()
    withdrawal_amounts = db.scalars(select(Withdrawal.amount)).all()

    total_raised = _sum(stake_amounts)
    total_withdrawn = _sum(withdrawal_amounts)
    total_goal = _sum(db.scalars(select(Project.funding_goal)))
    stake_count = len(stake_amounts)

    if total_goal > 0:
        progress = f"{Decimal(total_raised) * 100 / Decimal(total_goal):.2f}"
    else:
        progress = "0.00"

    return {
        "totalProjects": _count(db, select(func.count(Project.id))),
        "activeProjects": _count(
            db, select(func.count(Project.id)).where(Project.milestone_reached.is_(False))
        ),
        "completedProjects": _count(
            db, select(func.count(Project.id)).where(Project.milestone_reached.is_(True))
        ),
        "totalStakes": stake_count,
        "totalFundsRaised": str(total_raised),
        "totalFundingGoal": str(total_goal),
        "fundingProgress": progress,
        "totalWithdrawals": len(withdrawal_amounts),
        "totalWithdrawn": str(total_withdrawn),
        "netFunds": str(total_raised - total_withdrawn),
        "uniqueInvestors": _count(db, select(func.count(func.distinct(Stake.staker)))),
        "avgInvestment": str(total_raised // stake_count) if stake_count else "0",
    }


def aggregate_user_stats(db: Session, address: str) -> Dict[str, Any]:
    address = normalize_address(address)
    owned = func.lower(Project.owner) == address

    invested = db.scalars(select(Stake.amount).where(func.lower(Stake.staker) == address)).all()
    withdrawn = db.scalars(
        select(Withdrawal.amount).where(func.lower(Withdrawal.withdrawer) == address)
    ).all()
    total_invested, total_withdrawn = _sum(invested), _sum(withdrawn)

    return {
        "userProjects": _count(db, select(func.count(Project.id)).where(owned)),
        "activeProjects": _count(
            db,
            select(func.count(Project.id)).where(owned, Project.milestone_reached.is_(False)),
        ),
        "totalInvestments": len(invested),
        "totalInvested": str(total_invested),
        "totalWithdrawals": len(withdrawn),
        "totalWithdrawn": str(total_withdrawn),
        "netContribution": str(total_invested - total_withdrawn),
    }


def milestone_status(db: Session, project_id: int) -> Dict[str, Any]:
    """Re-run the milestone rule for one project and report its progress."""
    check_and_update_milestone(db, project_id)
    project = _require_project(db, project_id)
    return {
        "milestone_reached": bool(project.milestone_reached),
        "current_funds": str(to_int(project.funds)),
        "funding_goal": str(to_int(project.funding_goal)),
        "progress": progress_percent(project.funds, project.funding_goal),
    }
