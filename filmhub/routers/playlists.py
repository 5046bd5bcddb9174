import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from filmhub import accounts
from filmhub.database import get_db
from filmhub.dependencies import get_current_user, get_optional_user, is_staff
from filmhub.models import Playlist, PlaylistItem, User, Video
from filmhub.routers.films import get_visible_film, visible_to
from filmhub.schemas import (
    PlaylistCreate,
    PlaylistReorder,
    PlaylistResponse,
    PlaylistUpdate,
    PlaylistVideoAdd,
    PlaylistVideosResponse,
)

router = APIRouter(prefix="/api/playlists", tags=["playlists"])

logger = logging.getLogger(__name__)


# ── helpers ───────────────────────────────────────────────

def can_view_playlist(playlist: Playlist, user: Optional[User]) -> bool:
    if not playlist.is_private:
        return True
    return user is not None and (user.id == playlist.user_id or is_staff(user))


def get_playlist_or_404(db: Session, playlist_id: int, user: Optional[User]) -> Playlist:
    """Private playlists answer 404 to everyone but their owner (and staff)"""
    playlist = db.query(Playlist).filter(Playlist.id == playlist_id).first()
    if not playlist or not can_view_playlist(playlist, user):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Playlist not found"
        )
    return playlist


def get_own_playlist(db: Session, playlist_id: int, user: User) -> Playlist:
    playlist = get_playlist_or_404(db, playlist_id, user)
    if playlist.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not your playlist"
        )
    return playlist


def playlist_payload(db: Session, playlist: Playlist) -> dict:
    data = PlaylistResponse.model_validate(playlist).model_dump()
    data["video_count"] = db.query(func.count(PlaylistItem.id)).filter(
        PlaylistItem.playlist_id == playlist.id).scalar() or 0
    return data


def user_playlists(db: Session, owner: User, viewer: Optional[User]) -> list:
    """All of the owner's playlists for the owner, public ones for everybody else"""
    query = db.query(Playlist).filter(Playlist.user_id == owner.id)
    if viewer is None or viewer.id != owner.id:
        query = query.filter(Playlist.is_private.is_(False))
    playlists = query.order_by(Playlist.updated_at.desc(), Playlist.id.desc()).all()
    return [playlist_payload(db, p) for p in playlists]


def get_profile_user_or_404(db: Session, username: str) -> User:
    user = accounts.get_user_by_username(db, username)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


def touch(playlist: Playlist) -> None:
    playlist.updated_at = func.now()


# ── playlists ─────────────────────────────────────────────

@router.post("/", response_model=PlaylistResponse, status_code=status.HTTP_201_CREATED)
def create_playlist(
    payload: PlaylistCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    playlist = Playlist(user_id=user.id, title=payload.title,
                        description=payload.description, is_private=payload.is_private)
    db.add(playlist)
    db.commit()
    db.refresh(playlist)
    logger.info(f"Playlist created: playlist_id={playlist.id}, user_id={user.id}")
    return playlist_payload(db, playlist)


@router.get("/user/{username}")
def list_user_playlists(
    username: str,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    owner = get_profile_user_or_404(db, username)
    return {"playlists": user_playlists(db, owner, user)}


@router.get("/{playlist_id}", response_model=PlaylistResponse)
def get_playlist(
    playlist_id: int,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    return playlist_payload(db, get_playlist_or_404(db, playlist_id, user))


@router.put("/{playlist_id}", response_model=PlaylistResponse)
def update_playlist(
    playlist_id: int,
    payload: PlaylistUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Owner only"""

    playlist = get_own_playlist(db, playlist_id, user)

    update_data = payload.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Nothing to update"
        )
    for key, value in update_data.items():
        setattr(playlist, key, value)

    db.commit()
    db.refresh(playlist)
    return playlist_payload(db, playlist)


@router.delete("/{playlist_id}")
def delete_playlist(
    playlist_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    playlist = get_own_playlist(db, playlist_id, user)
    db.delete(playlist)
    db.commit()
    logger.info(f"Playlist deleted: playlist_id={playlist_id}, user_id={user.id}")
    return {"success": True, "message": "Playlist deleted"}


# ── playlist films ────────────────────────────────────────

@router.get("/{playlist_id}/videos", response_model=PlaylistVideosResponse)
def list_playlist_videos(
    playlist_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Films in playlist order; films the caller may not see are left out"""

    get_playlist_or_404(db, playlist_id, user)

    query = db.query(PlaylistItem).join(Video, PlaylistItem.video_id == Video.id).filter(
        PlaylistItem.playlist_id == playlist_id,
        visible_to(user),
    )
    total = query.count()
    items = query.order_by(PlaylistItem.position.asc()).offset(skip).limit(limit).all()

    return {
        "total": total,
        "skip": skip,
        "limit": limit,
        "has_more": skip + len(items) < total,
        "videos": items,
    }


@router.post("/{playlist_id}/videos", status_code=status.HTTP_201_CREATED)
def add_video(
    playlist_id: int,
    payload: PlaylistVideoAdd,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Append a film at the end of the playlist"""

    playlist = get_own_playlist(db, playlist_id, user)
    get_visible_film(db, payload.video_id, user)

    exists = db.query(PlaylistItem).filter(
        PlaylistItem.playlist_id == playlist.id,
        PlaylistItem.video_id == payload.video_id
    ).first()
    if exists:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Film already in playlist"
        )

    last = db.query(func.max(PlaylistItem.position)).filter(
        PlaylistItem.playlist_id == playlist.id).scalar()
    item = PlaylistItem(playlist_id=playlist.id, video_id=payload.video_id, position=(last or 0) + 1)
    db.add(item)
    touch(playlist)

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Film already in playlist"
        )

    return {"success": True, "playlist_id": playlist.id, "video_id": item.video_id, "position": item.position}


@router.delete("/{playlist_id}/videos/{video_id}")
def remove_video(
    playlist_id: int,
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove a film; later films move up one position"""

    playlist = get_own_playlist(db, playlist_id, user)

    item = db.query(PlaylistItem).filter(
        PlaylistItem.playlist_id == playlist.id,
        PlaylistItem.video_id == video_id
    ).first()
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Film is not in this playlist"
        )

    removed_position = item.position
    db.delete(item)
    db.flush()
    for later in db.query(PlaylistItem).filter(
        PlaylistItem.playlist_id == playlist.id,
        PlaylistItem.position > removed_position
    ).order_by(PlaylistItem.position.asc()).all():
        later.position -= 1
    touch(playlist)
    db.commit()

    return {"success": True, "message": "Film removed from playlist"}


@router.put("/{playlist_id}/reorder")
def reorder_videos(
    playlist_id: int,
    payload: PlaylistReorder,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Reorder the playlist
    - video_ids must list every film of the playlist exactly once
    - positions become 1..n in that order
    """

    playlist = get_own_playlist(db, playlist_id, user)
    items = {item.video_id: item for item in playlist.items}

    if len(set(payload.video_ids)) != len(payload.video_ids) or set(payload.video_ids) != set(items):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="video_ids must list every film of the playlist exactly once"
        )

    for position, video_id in enumerate(payload.video_ids, start=1):
        items[video_id].position = position
    touch(playlist)
    db.commit()

    return {"success": True, "video_ids": payload.video_ids}
