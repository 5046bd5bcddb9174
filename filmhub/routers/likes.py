from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.orm import Session
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..database import get_db
from ..dependencies import get_current_user
from ..models import Like, User
from ..schemas import LikeStatus
from .films import get_visible_film

router = APIRouter(prefix="/api/films", tags=["likes"])


def count_likes(db: Session, video_id: int) -> int:
    return db.query(func.count(Like.id)).filter(Like.video_id == video_id).scalar() or 0


def find_like(db: Session, video_id: int, user_id: int):
    return db.query(Like).filter(
        Like.video_id == video_id,
        Like.user_id == user_id
    ).first()


@router.post("/{video_id}/like", response_model=LikeStatus, status_code=status.HTTP_200_OK)
def toggle_like(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Toggle a like
    - not liked yet -> like
    - already liked -> unlike
    """

    get_visible_film(db, video_id, user)

    existing_like = find_like(db, video_id, user.id)
    if existing_like:
        db.delete(existing_like)
        db.commit()
        is_liked = False
    else:
        db.add(Like(video_id=video_id, user_id=user.id))
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request liked it first; the end state is the same
            db.rollback()
        is_liked = True

    return {
        "video_id": video_id,
        "like_count": count_likes(db, video_id),
        "is_liked": is_liked
    }


@router.get("/{video_id}/like", response_model=LikeStatus)
def get_like_status(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Like status
    - like count
    - whether the caller liked the film
    """

    get_visible_film(db, video_id, user)

    return {
        "video_id": video_id,
        "like_count": count_likes(db, video_id),
        "is_liked": find_like(db, video_id, user.id) is not None
    }


@router.delete("/{video_id}/like", response_model=LikeStatus)
def unlike_film(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Explicit unlike"""

    get_visible_film(db, video_id, user)

    like = find_like(db, video_id, user.id)
    if not like:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Film is not liked"
        )

    db.delete(like)
    db.commit()

    return {
        "video_id": video_id,
        "like_count": count_likes(db, video_id),
        "is_liked": False
    }
