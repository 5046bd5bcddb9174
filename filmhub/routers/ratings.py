from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional

from filmhub.database import get_db
from filmhub.dependencies import get_current_user, get_optional_user
from filmhub.models import Rating, User, Video
from filmhub.routers.films import get_visible_film
from filmhub.schemas import MyRatingResponse, RatingListResponse, RatingResponse, RatingStats, RatingUpsert

router = APIRouter(prefix="/api/ratings", tags=["ratings"])

STAR_FIELDS = {5: "five_star", 4: "four_star", 3: "three_star", 2: "two_star", 1: "one_star"}


def find_rating(db: Session, video_id: int, user_id: int):
    return db.query(Rating).filter(Rating.video_id == video_id, Rating.user_id == user_id).first()


def rating_stats(db: Session, video_id: int) -> dict:
    columns = [func.count(Rating.id), func.avg(Rating.rating)]
    columns += [func.sum(case((Rating.rating == stars, 1), else_=0)) for stars in STAR_FIELDS]
    row = db.query(*columns).filter(Rating.video_id == video_id).one()

    total, average = row[0] or 0, row[1]
    stats = {
        "video_id": video_id,
        "total_ratings": total,
        "average_rating": round(float(average), 2) if average is not None else None,
    }
    for field, count in zip(STAR_FIELDS.values(), row[2:]):
        stats[field] = count or 0
    return stats


@router.get("/video/{video_id}/stats", response_model=RatingStats)
def get_rating_stats(
    video_id: int,
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Count, average and per-star histogram"""

    get_visible_film(db, video_id, user)
    return rating_stats(db, video_id)


@router.get("/video/{video_id}", response_model=RatingListResponse)
def get_reviews(
    video_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db)
):
    """Ratings that carry a written review, newest first"""

    get_visible_film(db, video_id, user)

    ratings = db.query(Rating).filter(
        Rating.video_id == video_id,
        Rating.review.isnot(None),
        Rating.review != "",
    ).order_by(Rating.created_at.desc(), Rating.id.desc()).offset(skip).limit(limit).all()

    return {
        "ratings": ratings,
        "skip": skip,
        "limit": limit,
        "has_more": len(ratings) == limit,
    }


@router.get("/video/{video_id}/user")
def get_my_rating(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's rating for a film (null when not rated)"""

    get_visible_film(db, video_id, user)
    rating = find_rating(db, video_id, user.id)
    return {"rating": RatingResponse.model_validate(rating) if rating else None}


@router.post("/", response_model=RatingResponse)
def upsert_rating(
    payload: RatingUpsert,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create or replace the caller's rating"""

    get_visible_film(db, payload.video_id, user)

    review = payload.review.strip() if payload.review else None
    rating = find_rating(db, payload.video_id, user.id)

    if rating:
        rating.rating = payload.rating
        rating.review = review
    else:
        rating = Rating(video_id=payload.video_id, user_id=user.id,
                        rating=payload.rating, review=review)
        db.add(rating)

    try:
        db.commit()
    except IntegrityError:
        # a concurrent request inserted the same (film, user) row first
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Rating already exists, retry the request"
        )
    db.refresh(rating)
    return rating


@router.delete("/video/{video_id}")
def delete_rating(
    video_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove the caller's rating"""

    rating = find_rating(db, video_id, user.id)
    if not rating:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Rating not found"
        )

    db.delete(rating)
    db.commit()
    return {"success": True, "message": "Rating deleted"}


@router.get("/user/my-ratings")
def get_my_ratings(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Every rating of the caller with the film title"""

    rows = db.query(Rating, Video.title).join(Video, Rating.video_id == Video.id).filter(
        Rating.user_id == user.id
    ).order_by(Rating.created_at.desc(), Rating.id.desc()).offset(skip).limit(limit).all()

    ratings = []
    for rating, title in rows:
        ratings.append(MyRatingResponse.model_validate(rating).model_copy(update={"film_title": title}))

    return {
        "ratings": ratings,
        "skip": skip,
        "limit": limit,
        "has_more": len(ratings) == limit,
    }
