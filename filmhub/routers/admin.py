from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from filmhub import accounts
from filmhub.database import get_db
from filmhub.dependencies import require_admin, require_strict_admin
from filmhub.models import AdminActivity, Comment, Rating, User, Video
from filmhub.routers.films import get_film_or_404, remove_film
from filmhub.schemas import (
    AdminActivityResponse,
    AdminFilmUpdate,
    AdminUserResponse,
    BanRequest,
    BulkFilmAction,
    FilmAdmin,
    ModerationDecision,
    RoleUpdate,
)
from filmhub.security import utcnow

# Every endpoint here needs an admin or moderator
router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])

logger = logging.getLogger(__name__)

MODERATION_STATES = ("pending", "approved", "rejected", "flagged")


def log_admin_activity(db: Session, admin: User, action_type: str, target_type: str,
                       target_id: int, details: dict, request: Request):
    """Queue an audit row; it commits together with the action it records."""
    db.add(AdminActivity(
        admin_id=admin.id,
        action_type=action_type,
        target_type=target_type,
        target_id=target_id,
        details=details,
        ip_address=request.client.host if request.client else None,
    ))


def commit_or_500(db: Session, action: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"{action} failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{action} failed"
        )


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id, User.deleted_at.is_(None)).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def admin_user_payload(db: Session, user: User) -> dict:
    data = AdminUserResponse.model_validate(user, from_attributes=True).model_dump(exclude={"video_count"})
    data["video_count"] = db.query(func.count(Video.id)).filter(Video.owner_id == user.id).scalar() or 0
    return data


# ── dashboard ─────────────────────────────────────────────

@router.get("/stats")
def platform_stats(db: Session = Depends(get_db)):
    """Platform counters for the dashboard"""

    by_status = dict(db.query(Video.status, func.count(Video.id)).group_by(Video.status).all())
    by_moderation = dict(
        db.query(Video.moderation_status, func.count(Video.id)).group_by(Video.moderation_status).all())
    total_views, total_bytes = db.query(
        func.coalesce(func.sum(Video.view_count), 0),
        func.coalesce(func.sum(Video.file_size), 0),
    ).one()

    users_total = db.query(func.count(User.id)).filter(User.deleted_at.is_(None)).scalar()
    users_active = db.query(func.count(User.id)).filter(
        User.deleted_at.is_(None), User.status == "active", User.is_banned.is_(False)).scalar()
    users_banned = db.query(func.count(User.id)).filter(User.is_banned.is_(True)).scalar()

    top_videos = db.query(Video).filter(Video.moderation_status == "approved").order_by(
        Video.view_count.desc(), Video.id.desc()).limit(5).all()

    return {
        "videos": {
            "total": sum(by_status.values()),
            "ready": by_status.get("ready", 0),
            "processing": by_status.get("processing", 0),
            "error": by_status.get("error", 0),
            "moderation": {state: by_moderation.get(state, 0) for state in MODERATION_STATES},
        },
        "views": {"total": int(total_views)},
        "storage": {
            "total_bytes": int(total_bytes),
            "total_gb": round(int(total_bytes) / 1024 / 1024 / 1024, 2),
        },
        "users": {"total": users_total, "active": users_active, "banned": users_banned},
        "comments": {"total": db.query(func.count(Comment.id)).scalar()},
        "ratings": {"total": db.query(func.count(Rating.id)).scalar()},
        "top_videos": [
            {"id": v.id, "title": v.title, "view_count": v.view_count}
            for v in top_videos
        ],
    }


@router.get("/activity", response_model=List[AdminActivityResponse])
def activity_log(skip: int = Query(0, ge=0), limit: int = Query(100, ge=1, le=500), db: Session = Depends(get_db)):
    """Admin audit log, newest first"""

    return db.query(AdminActivity).order_by(
        AdminActivity.created_at.desc(), AdminActivity.id.desc()
    ).offset(skip).limit(limit).all()


# ── moderation queue ──────────────────────────────────────

@router.get("/moderation/queue")
def moderation_queue(
    status_filter: str = Query("pending", alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Films waiting for review, oldest first"""

    if status_filter not in MODERATION_STATES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of: {', '.join(MODERATION_STATES)}"
        )

    query = db.query(Video, User).join(User, Video.owner_id == User.id).filter(
        Video.moderation_status == status_filter)
    total = query.count()
    rows = query.order_by(Video.uploaded_at.asc(), Video.id.asc()).offset(skip).limit(limit).all()

    films = []
    for video, owner in rows:
        data = FilmAdmin.model_validate(video).model_dump()
        data.update(owner_username=owner.username, owner_email=owner.email)
        films.append(data)

    return {"total": total, "skip": skip, "limit": limit, "films": films}


@router.post("/moderation/films/{video_id}/approve", response_model=FilmAdmin)
def approve_film(
    video_id: int,
    request: Request,
    decision: Optional[ModerationDecision] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Approve a film; it becomes public"""

    video = get_film_or_404(db, video_id)
    notes = decision.notes if decision else None

    video.moderation_status = "approved"
    video.moderation_notes = notes
    video.moderated_by = admin.id
    video.moderated_at = utcnow()
    video.status = "ready"

    log_admin_activity(db, admin, "approve_video", "video", video.id, {"notes": notes}, request)
    commit_or_500(db, "Approve")
    db.refresh(video)
    logger.info(f"Film approved: video_id={video.id}, by={admin.id}")
    return video


@router.post("/moderation/films/{video_id}/reject", response_model=FilmAdmin)
def reject_film(
    video_id: int,
    decision: ModerationDecision,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Reject a film (reason required)"""

    if not decision.reason:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Rejection reason is required"
        )

    video = get_film_or_404(db, video_id)
    video.moderation_status = "rejected"
    video.moderation_notes = decision.notes or decision.reason
    video.moderated_by = admin.id
    video.moderated_at = utcnow()

    log_admin_activity(db, admin, "reject_video", "video", video.id,
                       {"reason": decision.reason, "notes": decision.notes}, request)
    commit_or_500(db, "Reject")
    db.refresh(video)
    logger.info(f"Film rejected: video_id={video.id}, by={admin.id}")
    return video


@router.post("/moderation/films/{video_id}/flag", response_model=FilmAdmin)
def flag_film(
    video_id: int,
    request: Request,
    decision: Optional[ModerationDecision] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Flag a film for further review"""

    video = get_film_or_404(db, video_id)
    reason = decision.reason if decision else None
    notes = decision.notes if decision else None

    video.moderation_status = "flagged"
    video.flag_count = (video.flag_count or 0) + 1
    video.moderation_notes = notes or reason

    log_admin_activity(db, admin, "flag_video", "video", video.id,
                       {"reason": reason, "notes": notes}, request)
    commit_or_500(db, "Flag")
    db.refresh(video)
    return video


# ── users ─────────────────────────────────────────────────

@router.get("/users")
def list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    banned: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Users with search / role / ban filters"""

    query = db.query(User).filter(User.deleted_at.is_(None))
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
    if role:
        query = query.filter(User.role == role)
    if banned is not None:
        query = query.filter(User.is_banned.is_(banned))

    total = query.count()
    users = query.order_by(User.created_at.desc(), User.id.desc()).offset(skip).limit(limit).all()
    return {
        "total": total,
        "skip": skip,
        "limit": limit,
        "users": [admin_user_payload(db, u) for u in users],
    }


@router.post("/users/{user_id}/ban")
def ban_user(
    user_id: int,
    payload: BanRequest,
    request: Request,
    admin: User = Depends(require_strict_admin),
    db: Session = Depends(get_db)
):
    """Ban a user (admin only); their sessions are revoked"""

    user = get_user_or_404(db, user_id)
    if user.id == admin.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot ban yourself")

    user.is_banned = True
    user.ban_reason = payload.reason
    user.banned_at = utcnow()
    user.banned_by = admin.id
    revoked = accounts.deactivate_user_sessions(db, user.id, commit=False)

    log_admin_activity(db, admin, "ban_user", "user", user.id,
                       {"reason": payload.reason, "sessions_revoked": revoked}, request)
    commit_or_500(db, "Ban")
    db.refresh(user)
    logger.warning(f"User banned: user_id={user.id}, by={admin.id}")
    return {"success": True, "user": admin_user_payload(db, user)}


@router.post("/users/{user_id}/unban")
def unban_user(
    user_id: int,
    request: Request,
    admin: User = Depends(require_strict_admin),
    db: Session = Depends(get_db)
):
    """Lift a ban (admin only)"""

    user = get_user_or_404(db, user_id)
    user.is_banned = False
    user.ban_reason = None
    user.banned_at = None
    user.banned_by = None

    log_admin_activity(db, admin, "unban_user", "user", user.id, {}, request)
    commit_or_500(db, "Unban")
    db.refresh(user)
    logger.info(f"User unbanned: user_id={user.id}, by={admin.id}")
    return {"success": True, "user": admin_user_payload(db, user)}


@router.put("/users/{user_id}/role")
def change_role(
    user_id: int,
    payload: RoleUpdate,
    request: Request,
    admin: User = Depends(require_strict_admin),
    db: Session = Depends(get_db)
):
    """Change a user's role (admin only)"""

    user = get_user_or_404(db, user_id)
    if user.id == admin.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot change your own role")

    previous = user.role
    user.role = payload.role
    log_admin_activity(db, admin, "change_role", "user", user.id,
                       {"from": previous, "to": payload.role}, request)
    commit_or_500(db, "Role change")
    db.refresh(user)
    return {"success": True, "user": admin_user_payload(db, user)}


# ── films ─────────────────────────────────────────────────

@router.get("/films")
def list_all_films(
    status_filter: str = Query("all", alias="status"),
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Every film, any state, paginated"""

    query = db.query(Video)
    if status_filter != "all":
        query = query.filter(Video.status == status_filter)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(Video.title.ilike(pattern), Video.description.ilike(pattern)))

    total = query.count()
    videos = query.order_by(Video.uploaded_at.desc(), Video.id.desc()).offset((page - 1) * limit).limit(limit).all()

    films = []
    for video in videos:
        data = FilmAdmin.model_validate(video).model_dump()
        data["file_size_mb"] = round(video.file_size / 1024 / 1024) if video.file_size else 0
        data["duration_formatted"] = format_duration(video.duration) if video.duration else None
        films.append(data)

    return {
        "films": films,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.put("/films/{video_id}", response_model=FilmAdmin)
def admin_update_film(
    video_id: int,
    payload: AdminFilmUpdate,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Edit any film's metadata / processing status"""

    video = get_film_or_404(db, video_id)
    update_data = payload.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid fields to update")

    for key, value in update_data.items():
        setattr(video, key, value)

    log_admin_activity(db, admin, "update_video", "video", video.id, update_data, request)
    commit_or_500(db, "Update")
    db.refresh(video)
    return video


@router.delete("/films/{video_id}")
def admin_delete_film(
    video_id: int,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Delete any film"""

    video = get_film_or_404(db, video_id)
    log_admin_activity(db, admin, "delete_video", "video", video.id, {"title": video.title}, request)
    file_deleted = remove_film(db, video)
    logger.info(f"Admin {admin.username} deleted film {video_id}")
    return {"success": True, "message": "Film deleted", "file_deleted": file_deleted}


@router.post("/films/bulk")
def bulk_films(
    payload: BulkFilmAction,
    request: Request,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Bulk delete / status update"""

    if payload.action == "update_status" and not payload.status:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="status is required")

    videos = db.query(Video).filter(Video.id.in_(payload.video_ids)).all()
    affected = len(videos)

    if payload.action == "delete":
        deleted_ids = [v.id for v in videos]
        for video in videos:
            remove_film(db, video)
        log_admin_activity(db, admin, "bulk_delete_videos", "video", None,
                           {"video_ids": deleted_ids}, request)
        commit_or_500(db, "Bulk delete")
    else:
        for video in videos:
            video.status = payload.status
        log_admin_activity(db, admin, "bulk_update_status", "video", None,
                           {"video_ids": [v.id for v in videos], "status": payload.status}, request)
        commit_or_500(db, "Bulk update")

    logger.info(f"Admin {admin.username} bulk {payload.action}: {affected} film(s)")
    return {"success": True, "message": f"Bulk {payload.action} completed", "affected_rows": affected}


# ── maintenance ───────────────────────────────────────────

@router.post("/maintenance/cleanup-tokens")
def cleanup_tokens(
    request: Request,
    admin: User = Depends(require_strict_admin),
    db: Session = Depends(get_db)
):
    """Purge expired sessions and one-time tokens"""

    deleted = accounts.cleanup_expired_tokens(db)
    log_admin_activity(db, admin, "cleanup_tokens", "system", None, {"deleted": deleted}, request)
    commit_or_500(db, "Cleanup")
    return {"success": True, "deleted": deleted}


def format_duration(seconds: int) -> str:
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"
