from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_db
from ..models import Route
from ..schemas import RouteOut


router = APIRouter(prefix="/network", tags=["network"])


@router.get("/routes", response_model=list[RouteOut])
def list_routes(db: Session = Depends(get_db)):
    rows = db.query(Route).order_by(Route.start.asc(), Route.end.asc()).all()
    return [RouteOut(id=str(r.id), start=r.start, end=r.end) for r in rows]
