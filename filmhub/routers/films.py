from fastapi import APIRouter, UploadFile, File, HTTPException, status, Request, Depends, Form, Query
from fastapi.responses import StreamingResponse
from pathlib import Path
from datetime import datetime, time, timedelta, timezone
from typing import Optional
import uuid
import logging
from urllib.parse import quote

from sqlalchemy import and_, func, or_, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from filmhub import config
from filmhub.database import get_db
from filmhub.dependencies import get_current_user, get_optional_user, is_staff
from filmhub.models import AdminActivity, Comment, Like, Rating, User, Video
from filmhub.s3_client import upload_file_to_s3, delete_file_from_s3, get_file_from_s3
from filmhub.schemas import Film, FilmDetail, FilmListResponse, FilmUpdate, UploadLimits

router = APIRouter(prefix="/api/films", tags=["films"])

logger = logging.getLogger(__name__)

SORTS = ("newest", "views", "title", "rating")


# ── helpers ───────────────────────────────────────────────

def get_film_or_404(db: Session, video_id: int) -> Video:
    video = db.query(Video).filter(Video.id == video_id).first()
    if not video:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Film not found"
        )
    return video


def is_public(video: Video) -> bool:
    return video.moderation_status == "approved" and not video.is_private and video.status == "ready"


def can_view(video: Video, user: Optional[User]) -> bool:
    if is_public(video):
        return True
    return user is not None and (user.id == video.owner_id or is_staff(user))


def get_visible_film(db: Session, video_id: int, user: Optional[User]) -> Video:
    """404 (not 403) for films the caller may not see"""
    video = get_film_or_404(db, video_id)
    if not can_view(video, user):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Film not found"
        )
    return video


def visible_to(user: Optional[User]):
    """SQL filter matching can_view, for list queries joined on Video"""
    public = and_(
        Video.moderation_status == "approved",
        Video.is_private.is_(False),
        Video.status == "ready",
    )
    if user is None:
        return public
    if is_staff(user):
        return true()
    return or_(public, Video.owner_id == user.id)


def film_detail(db: Session, video: Video) -> dict:
    """Film fields plus like / comment / rating counters."""
    like_count = db.query(func.count(Like.id)).filter(Like.video_id == video.id).scalar()
    comment_count = db.query(func.count(Comment.id)).filter(Comment.video_id == video.id).scalar()
    rating_count, average = db.query(func.count(Rating.id), func.avg(Rating.rating)).filter(
        Rating.video_id == video.id).one()

    data = Film.model_validate(video).model_dump()
    data.update(
        uploader=video.owner,
        like_count=like_count or 0,
        comment_count=comment_count or 0,
        rating_count=rating_count or 0,
        average_rating=round(float(average), 2) if average is not None else None,
    )
    return data


def remove_film(db: Session, video: Video) -> bool:
    """Delete the row (likes/comments/ratings cascade), then the S3 object."""
    video_id = video.id
    storage_key = video.filename

    try:
        db.delete(video)
        db.commit()
        logger.info(f"DB delete done: video_id={video_id}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"DB delete failed: {e}")
        raise HTTPException(status_code=500, detail="DB delete failed")

    # The row is gone either way; a stale S3 object is only logged
    try:
        delete_file_from_s3(storage_key)
        logger.info(f"S3 file deleted: {storage_key}")
        return True
    except Exception as e:
        logger.error(f"S3 file delete error: {e}")
        return False


def _start_of_today() -> datetime:
    return datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)


def uploads_today(db: Session, user: User) -> int:
    return db.query(func.count(Video.id)).filter(
        Video.owner_id == user.id,
        Video.uploaded_at >= _start_of_today(),
    ).scalar() or 0


async def read_upload(file: UploadFile) -> tuple:
    """Validates extension and size; returns (storage_key, content, size)."""
    file_ext = Path(file.filename or "").suffix.lower()
    if file_ext not in config.ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File type not allowed. Allowed: {', '.join(sorted(config.ALLOWED_EXTENSIONS))}"
        )

    file_content = await file.read()
    file_size = len(file_content)
    if file_size == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Empty file"
        )
    if file_size > config.MAX_FILE_SIZE:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Max: {config.MAX_FILE_SIZE // (1024 * 1024)}MB"
        )

    return f"films/{uuid.uuid4()}{file_ext}", file_content, file_size


def parse_range(range_header: str, file_size: int) -> tuple:
    """'bytes=start-end' / 'bytes=start-' / 'bytes=-suffix' -> (start, end)"""
    try:
        unit, _, spec = range_header.partition("=")
        if unit.strip().lower() != "bytes" or "," in spec:
            raise ValueError(range_header)
        start_str, end_str = spec.strip().split("-")
        if start_str == "":
            suffix = int(end_str)
            if suffix <= 0:
                raise ValueError(range_header)
            start, end = max(file_size - suffix, 0), file_size - 1
        else:
            start = int(start_str)
            end = int(end_str) if end_str else file_size - 1
    except ValueError:
        raise HTTPException(
            status_code=416,
            detail="Invalid range",
            headers={"Content-Range": f"bytes */{file_size}"}
        )

    end = min(end, file_size - 1)
    if start < 0 or start >= file_size or start > end:
        raise HTTPException(
            status_code=416,
            detail="Invalid range",
            headers={"Content-Range": f"bytes */{file_size}"}
        )
    return start, end


# ── catalog ───────────────────────────────────────────────

@router.get("/", response_model=FilmListResponse)
def list_films(
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "newest",
    skip: int = 0,
    limit: int = 20,
    db: Session = Depends(get_db)
):
    """Public catalog (approved, public, ready films)"""

    if sort not in SORTS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"sort must be one of: {', '.join(SORTS)}"
        )
    limit = max(1, min(limit, 100))
    skip = max(skip, 0)

    query = db.query(Video).join(User, Video.owner_id == User.id).filter(
        Video.moderation_status == "approved",
        Video.is_private.is_(False),
        Video.status == "ready",
    )
    if category and category != "all":
        query = query.filter(Video.category == category)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Video.title.ilike(pattern),  # ilike = case-insensitive
            Video.description.ilike(pattern),
            User.username.ilike(pattern),
            User.display_name.ilike(pattern),
        ))

    total = query.count()

    if sort == "views":
        query = query.order_by(Video.view_count.desc(), Video.id.desc())
    elif sort == "title":
        query = query.order_by(Video.title.asc(), Video.id.asc())
    elif sort == "rating":
        averages = db.query(
            Rating.video_id.label("video_id"),
            func.avg(Rating.rating).label("average"),
        ).group_by(Rating.video_id).subquery()
        query = query.outerjoin(averages, averages.c.video_id == Video.id).order_by(
            func.coalesce(averages.c.average, 0).desc(), Video.id.desc())
    else:
        query = query.order_by(Video.uploaded_at.desc(), Video.id.desc())

    videos = query.offset(skip).limit(limit).all()
    return {
        "total": total,
        "films": [film_detail(db, video) for video in videos]
    }


@router.get("/categories")
def list_categories(db: Session = Depends(get_db)):
    """Configured categories with the number of public films in each"""

    rows = db.query(Video.category, func.count(Video.id)).filter(
        Video.moderation_status == "approved",
        Video.is_private.is_(False),
        Video.status == "ready",
    ).group_by(Video.category).all()
    counts = {category: count for category, count in rows if category}

    return {
        "categories": [
            {"name": name, "film_count": counts.get(name, 0)}
            for name in config.FILM_CATEGORIES
        ]
    }


@router.get("/user", response_model=FilmListResponse)
def list_my_films(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's own films, whatever their moderation state"""

    query = db.query(Video).filter(Video.owner_id == user.id)
    total = query.count()
    videos = query.order_by(Video.id.desc()).offset(skip).limit(limit).all()
    return {
        "total": total,
        "films": [film_detail(db, video) for video in videos]
    }


@router.get("/upload-limits", response_model=UploadLimits)
def upload_limits(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Daily upload allowance"""

    used = uploads_today(db, user)
    remaining = max(0, config.UPLOAD_DAILY_LIMIT - used)
    return {
        "daily_limit": config.UPLOAD_DAILY_LIMIT,
        "used": used,
        "remaining": remaining,
        "next_reset": _start_of_today() + timedelta(days=1),
        "can_upload": remaining > 0 or is_staff(user),
    }


@router.post("/upload", status_code=status.HTTP_201_CREATED, response_model=Film)
async def upload_film(
    file: UploadFile = File(...),
    title: str = Form(..., min_length=1, max_length=255),
    description: Optional[str] = Form(None),
    category: Optional[str] = Form(None),
    is_private: bool = Form(False),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Upload a film; it waits in the moderation queue until approved"""

    # 1. Metadata checks
    if category and category not in config.FILM_CATEGORIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown category: {category}"
        )

    # 2. Daily limit (staff exempt)
    if not is_staff(user) and uploads_today(db, user) >= config.UPLOAD_DAILY_LIMIT:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Daily upload limit reached ({config.UPLOAD_DAILY_LIMIT})"
        )

    # 3. File checks + S3 upload
    storage_key, file_content, file_size = await read_upload(file)
    try:
        s3_url = upload_file_to_s3(
            file_content=file_content,
            filename=storage_key,
            content_type=file.content_type
        )
    except Exception as e:
        logger.error(f"Upload failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="File upload failed"
        )

    # 4. DB row
    db_video = Video(
        owner_id=user.id,
        title=title.strip(),
        description=description,
        category=category,
        filename=storage_key,
        original_filename=file.filename,
        file_path=s3_url,
        file_size=file_size,
        content_type=file.content_type,
        status="ready",
        moderation_status="pending",
        is_private=is_private,
    )
    try:
        db.add(db_video)
        db.commit()
        db.refresh(db_video)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"DB insert failed, removing uploaded object: {e}")
        try:
            delete_file_from_s3(storage_key)
        except Exception as cleanup_error:
            logger.warning(f"Orphaned S3 object {storage_key}: {cleanup_error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="DB insert failed"
        )

    logger.info(f"Film uploaded: video_id={db_video.id}, owner_id={user.id}")
    return db_video


# ── single film ───────────────────────────────────────────

@router.get("/{video_id}", response_model=FilmDetail)
def get_film(
    video_id: int,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Film detail"""

    video = get_visible_film(db, video_id, user)
    return film_detail(db, video)


@router.post("/{video_id}/view")
def record_view(
    video_id: int,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Count a view"""

    video = get_visible_film(db, video_id, user)
    video.view_count = (video.view_count or 0) + 1
    db.commit()
    return {"video_id": video.id, "view_count": video.view_count}


@router.put("/{video_id}", response_model=Film)
def update_film(
    video_id: int,
    payload: FilmUpdate,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Edit film metadata (owner or staff)"""

    video = get_film_or_404(db, video_id)
    if video.owner_id != user.id and not is_staff(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your film")

    update_data = payload.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Nothing to update"
        )
    if update_data.get("category") and update_data["category"] not in config.FILM_CATEGORIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown category: {update_data['category']}"
        )

    for key, value in update_data.items():
        setattr(video, key, value)

    if video.owner_id != user.id:
        db.add(AdminActivity(
            admin_id=user.id, action_type="update_video", target_type="video",
            target_id=video.id, details=update_data,
            ip_address=request.client.host if request.client else None,
        ))

    try:
        db.commit()
        db.refresh(video)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"DB update failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="DB update failed"
        )
    return video


@router.put("/{video_id}/file", response_model=Film)
async def replace_film_file(
    video_id: int,
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Replace the film file (owner only)
    - the new file goes back to the moderation queue
    - the old S3 object is removed only after the DB commit
    """

    video = get_film_or_404(db, video_id)
    if video.owner_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your film")

    old_key = video.filename
    new_key, file_content, file_size = await read_upload(file)

    try:
        new_url = upload_file_to_s3(
            file_content=file_content,
            filename=new_key,
            content_type=file.content_type
        )
    except Exception as e:
        logger.error(f"Upload failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="File upload failed"
        )

    video.filename = new_key
    video.file_path = new_url
    video.file_size = file_size
    video.content_type = file.content_type
    video.original_filename = file.filename
    video.moderation_status = "pending"

    try:
        db.commit()
        db.refresh(video)
    except SQLAlchemyError as e:
        db.rollback()
        # DB failed: drop the object we just uploaded
        try:
            delete_file_from_s3(new_key)
            logger.info(f"Rollback: new S3 file removed: {new_key}")
        except Exception as cleanup_error:
            logger.warning(f"Orphaned S3 object {new_key}: {cleanup_error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"DB update failed: {str(e)}"
        )

    try:
        delete_file_from_s3(old_key)
        logger.info(f"Old S3 file removed: {old_key}")
    except Exception as e:
        # new file is already live
        logger.warning(f"Old S3 file delete failed: {e}")

    return video


@router.delete("/{video_id}", status_code=status.HTTP_200_OK)
def delete_film(
    video_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a film (owner or staff)"""

    video = get_film_or_404(db, video_id)
    if video.owner_id != user.id and not is_staff(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your film")

    if video.owner_id != user.id:
        db.add(AdminActivity(
            admin_id=user.id, action_type="delete_video", target_type="video",
            target_id=video.id, details={"title": video.title},
            ip_address=request.client.host if request.client else None,
        ))

    file_deleted = remove_film(db, video)
    return {
        "success": True,
        "message": "Film deleted",
        "file_deleted": file_deleted
    }


# ── playback ──────────────────────────────────────────────

@router.get("/{video_id}/stream")
def stream_film(
    video_id: int,
    request: Request,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Stream a film (HTTP Range supported)"""

    video = get_visible_film(db, video_id, user)
    media_type = video.content_type or "application/octet-stream"
    range_header = request.headers.get("range")

    # No Range: whole object
    if not range_header:
        try:
            s3_response = get_file_from_s3(video.filename)
        except Exception as e:
            raise HTTPException(status_code=500, detail=f"Streaming failed: {str(e)}")

        return StreamingResponse(
            s3_response['Body'].iter_chunks(),
            media_type=media_type,
            headers={
                "Accept-Ranges": "bytes",
                "Content-Length": str(video.file_size),
            }
        )

    start, end = parse_range(range_header, video.file_size)
    chunk_size = end - start + 1

    try:
        s3_response = get_file_from_s3(video.filename, byte_range=f"bytes={start}-{end}")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Streaming failed: {str(e)}")

    return StreamingResponse(
        s3_response['Body'].iter_chunks(),
        status_code=206,
        media_type=media_type,
        headers={
            "Content-Range": f"bytes {start}-{end}/{video.file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(chunk_size),
        }
    )


@router.get("/{video_id}/download")
def download_film(
    video_id: int,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Download a film"""

    video = get_visible_film(db, video_id, user)
    try:
        s3_response = get_file_from_s3(video.filename)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Download failed: {str(e)}")

    # Keep the stored extension on the download name
    file_ext = Path(video.filename).suffix
    download_filename = video.original_filename if video.original_filename.endswith(file_ext) \
        else f"{video.original_filename}{file_ext}"
    encoded_filename = quote(download_filename)

    return StreamingResponse(
        s3_response['Body'].iter_chunks(),
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{encoded_filename}"
        }
    )
