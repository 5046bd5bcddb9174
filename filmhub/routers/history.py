import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from filmhub.database import get_db
from filmhub.dependencies import get_current_user
from filmhub.models import User, Video, WatchHistory
from filmhub.routers.films import get_visible_film, visible_to
from filmhub.schemas import WatchHistoryEntry, WatchHistoryListResponse, WatchRecord, WatchStats

router = APIRouter(prefix="/api/history", tags=["history"])

logger = logging.getLogger(__name__)

# "continue watching" skips films barely started or nearly finished
CONTINUE_MARGIN_SECONDS = 30


def find_entry(db: Session, video_id: int, user_id: int):
    return db.query(WatchHistory).filter(
        WatchHistory.video_id == video_id,
        WatchHistory.user_id == user_id
    ).first()


def progress_percent(watch_duration: int, duration: Optional[int]) -> Optional[float]:
    if not duration:
        return None
    return round(min(watch_duration / duration, 1.0) * 100, 2)


def entry_payload(entry: WatchHistory) -> dict:
    data = WatchHistoryEntry.model_validate(entry).model_dump()
    data["progress_percent"] = progress_percent(entry.watch_duration, entry.video.duration)
    return data


def merge_progress(entry: WatchHistory, payload: WatchRecord) -> None:
    """Progress only moves forward; a completed film stays completed."""
    entry.watch_duration = max(entry.watch_duration or 0, payload.watch_duration)
    entry.completed = bool(entry.completed) or payload.completed


def history_query(db: Session, user: User):
    return db.query(WatchHistory).join(Video, WatchHistory.video_id == Video.id).filter(
        WatchHistory.user_id == user.id,
        visible_to(user),
    )


@router.get("/", response_model=WatchHistoryListResponse)
def get_history(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's watch history, most recently watched first"""

    query = history_query(db, user)
    total = query.count()
    entries = query.order_by(
        WatchHistory.updated_at.desc(), WatchHistory.id.desc()
    ).offset(skip).limit(limit).all()

    return {
        "total": total,
        "skip": skip,
        "limit": limit,
        "has_more": skip + len(entries) < total,
        "history": [entry_payload(e) for e in entries],
    }


@router.get("/continue")
def continue_watching(
    limit: int = Query(10, ge=1, le=50),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Unfinished films with meaningful progress"""

    entries = history_query(db, user).filter(
        WatchHistory.completed.is_(False),
        WatchHistory.watch_duration > CONTINUE_MARGIN_SECONDS,
        or_(
            Video.duration.is_(None),
            WatchHistory.watch_duration < Video.duration - CONTINUE_MARGIN_SECONDS,
        ),
    ).order_by(WatchHistory.updated_at.desc(), WatchHistory.id.desc()).limit(limit).all()

    return {"videos": [entry_payload(e) for e in entries]}


@router.get("/stats", response_model=WatchStats)
def get_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    total, completed, watch_time, average, days = db.query(
        func.count(WatchHistory.id),
        func.sum(case((WatchHistory.completed.is_(True), 1), else_=0)),
        func.sum(WatchHistory.watch_duration),
        func.avg(WatchHistory.watch_duration),
        func.count(func.distinct(func.date(WatchHistory.created_at))),
    ).filter(WatchHistory.user_id == user.id).one()

    return {
        "total_watched": total or 0,
        "completed_count": completed or 0,
        "total_watch_time": watch_time or 0,
        "average_watch_time": round(float(average), 2) if average is not None else None,
        "days_active": days or 0,
    }


@router.post("/record", response_model=WatchHistoryEntry)
def record_progress(
    payload: WatchRecord,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create or advance the caller's progress on a film"""

    get_visible_film(db, payload.video_id, user)

    entry = find_entry(db, payload.video_id, user.id)
    if entry is None:
        entry = WatchHistory(video_id=payload.video_id, user_id=user.id,
                             watch_duration=payload.watch_duration, completed=payload.completed)
        db.add(entry)
    else:
        merge_progress(entry, payload)

    try:
        db.commit()
    except IntegrityError:
        # another request created the row first; merge into it
        db.rollback()
        entry = find_entry(db, payload.video_id, user.id)
        merge_progress(entry, payload)
        db.commit()

    db.refresh(entry)
    return entry_payload(entry)


@router.get("/progress/{video_id}")
def get_progress(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's progress on one film (null when never watched)"""

    get_visible_film(db, video_id, user)
    entry = find_entry(db, video_id, user.id)
    return {"progress": entry_payload(entry) if entry else None}


@router.put("/{video_id}/complete", response_model=WatchHistoryEntry)
def mark_completed(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    entry = find_entry(db, video_id, user.id)
    if not entry:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Film is not in your history"
        )

    entry.completed = True
    db.commit()
    db.refresh(entry)
    return entry_payload(entry)


@router.delete("/")
def clear_history(
    video_id: Optional[int] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Clear history
    - video_id given -> remove that film only
    - otherwise -> remove everything
    """

    query = db.query(WatchHistory).filter(WatchHistory.user_id == user.id)
    if video_id is not None:
        query = query.filter(WatchHistory.video_id == video_id)

    deleted = query.delete(synchronize_session=False)
    if video_id is not None and not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Film is not in your history"
        )
    db.commit()
    logger.info(f"Watch history cleared: user_id={user.id}, rows={deleted}")

    return {
        "success": True,
        "message": "Film removed from history" if video_id is not None else "Watch history cleared",
        "deleted": deleted,
    }
