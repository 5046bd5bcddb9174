from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
import logging

from filmhub.database import get_db
from filmhub.dependencies import get_current_user, get_optional_user, is_staff
from filmhub.models import AdminActivity, Comment, CommentReaction, User
from filmhub.routers.films import get_visible_film
from filmhub.schemas import (
    CommentCreate,
    CommentListResponse,
    CommentResponse,
    CommentUpdate,
    ReactionRequest,
)

router = APIRouter(prefix="/api/comments", tags=["comments"])

logger = logging.getLogger(__name__)


def get_comment_or_404(db: Session, comment_id: int) -> Comment:
    comment = db.query(Comment).filter(Comment.id == comment_id).first()
    if not comment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Comment not found"
        )
    return comment


def comment_payload(db: Session, comment: Comment, user: Optional[User] = None) -> dict:
    """Comment fields + reaction/reply counters (+ the caller's reaction)."""
    counts = dict(
        db.query(CommentReaction.reaction_type, func.count(CommentReaction.id))
        .filter(CommentReaction.comment_id == comment.id)
        .group_by(CommentReaction.reaction_type)
        .all()
    )
    reply_count = db.query(func.count(Comment.id)).filter(Comment.parent_id == comment.id).scalar()

    user_reaction = None
    if user is not None:
        reaction = db.query(CommentReaction).filter(
            CommentReaction.comment_id == comment.id,
            CommentReaction.user_id == user.id,
        ).first()
        user_reaction = reaction.reaction_type if reaction else None

    data = CommentResponse.model_validate(comment).model_dump()
    data.update(
        author=comment.author,
        like_count=counts.get("like", 0),
        dislike_count=counts.get("dislike", 0),
        reply_count=reply_count or 0,
        user_reaction=user_reaction,
    )
    return data


## 1. List comments (GET)
# GET /api/comments/video/{video_id}
@router.get("/video/{video_id}", response_model=CommentListResponse)
def read_comments(
    video_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """
    Top-level comments of a film, newest first.
    """

    # 1. The film must exist and be visible
    get_visible_film(db, video_id, user)

    # 2. Top-level comments, newest first
    query = db.query(Comment).filter(
        Comment.video_id == video_id,
        Comment.parent_id.is_(None)
    )
    total = query.count()
    comments = query.order_by(
        Comment.created_at.desc(), Comment.id.desc()
    ).offset(skip).limit(limit).all()

    return {
        "total": total,
        "comments": [comment_payload(db, c, user) for c in comments]
    }


## 2. Replies (GET)
# GET /api/comments/{comment_id}/replies
@router.get("/{comment_id}/replies", response_model=CommentListResponse)
def read_replies(
    comment_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Replies to a comment, oldest first"""

    parent = get_comment_or_404(db, comment_id)
    get_visible_film(db, parent.video_id, user)

    query = db.query(Comment).filter(Comment.parent_id == comment_id)
    total = query.count()
    replies = query.order_by(
        Comment.created_at.asc(), Comment.id.asc()
    ).offset(skip).limit(limit).all()

    return {
        "total": total,
        "comments": [comment_payload(db, c, user) for c in replies]
    }


## 3. Create (POST)
# POST /api/comments
@router.post("/", response_model=CommentResponse, status_code=status.HTTP_201_CREATED)
def create_comment(
    comment: CommentCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Post a comment (or a reply when parent_id is given).
    """

    # 1. Film must be visible to the author
    get_visible_film(db, comment.video_id, user)

    # 2. A reply must target a comment on the same film
    if comment.parent_id is not None:
        parent = get_comment_or_404(db, comment.parent_id)
        if parent.video_id != comment.video_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Parent comment belongs to another film"
            )

    # 3. Save
    db_comment = Comment(
        video_id=comment.video_id,
        user_id=user.id,
        parent_id=comment.parent_id,
        content=comment.content
    )
    db.add(db_comment)
    db.commit()
    db.refresh(db_comment)

    return comment_payload(db, db_comment, user)


@router.put("/{comment_id}", response_model=CommentResponse)
def update_comment(
    comment_id: int,
    comment_update: CommentUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Edit a comment (author only)"""

    comment = get_comment_or_404(db, comment_id)
    if comment.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Comment not found or unauthorized"
        )

    comment.content = comment_update.content
    comment.is_edited = True

    try:
        db.commit()
        db.refresh(comment)
        logger.info(f"Comment updated: comment_id={comment_id}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Comment update failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Comment update failed"
        )

    return comment_payload(db, comment, user)


@router.delete("/{comment_id}", status_code=status.HTTP_200_OK)
def delete_comment(
    comment_id: int,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a comment and its replies (author or staff)"""

    comment = get_comment_or_404(db, comment_id)
    if comment.user_id != user.id and not is_staff(user):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Comment not found or unauthorized"
        )

    if comment.user_id != user.id:
        db.add(AdminActivity(
            admin_id=user.id, action_type="delete_comment", target_type="comment",
            target_id=comment.id, details={"video_id": comment.video_id},
            ip_address=request.client.host if request.client else None,
        ))

    try:
        db.delete(comment)
        db.commit()
        logger.info(f"Comment deleted: comment_id={comment_id}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Comment delete failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Comment delete failed"
        )

    return {
        "success": True,
        "message": "Comment deleted",
        "comment_id": comment_id
    }


@router.post("/{comment_id}/reaction")
def add_reaction(
    comment_id: int,
    payload: ReactionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Like / dislike a comment; a second call switches the reaction"""

    comment = get_comment_or_404(db, comment_id)
    get_visible_film(db, comment.video_id, user)

    reaction = db.query(CommentReaction).filter(
        CommentReaction.comment_id == comment_id,
        CommentReaction.user_id == user.id,
    ).first()
    if reaction:
        reaction.reaction_type = payload.reaction_type
    else:
        db.add(CommentReaction(comment_id=comment_id, user_id=user.id,
                               reaction_type=payload.reaction_type))
    db.commit()

    data = comment_payload(db, comment, user)
    return {
        "success": True,
        "comment_id": comment_id,
        "reaction": payload.reaction_type,
        "like_count": data["like_count"],
        "dislike_count": data["dislike_count"],
    }


@router.delete("/{comment_id}/reaction")
def remove_reaction(
    comment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove the caller's reaction (no-op when there is none)"""

    comment = get_comment_or_404(db, comment_id)
    db.query(CommentReaction).filter(
        CommentReaction.comment_id == comment_id,
        CommentReaction.user_id == user.id,
    ).delete(synchronize_session=False)
    db.commit()

    data = comment_payload(db, comment, user)
    return {
        "success": True,
        "comment_id": comment_id,
        "reaction": None,
        "like_count": data["like_count"],
        "dislike_count": data["dislike_count"],
    }
