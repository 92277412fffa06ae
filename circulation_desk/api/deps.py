from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from circulation_desk.core.database import get_db
from circulation_desk.models.models import Patron
from circulation_desk.services.circulation import CirculationService


def get_actor(x_patron_id: Optional[int] = Header(None), db: Session = Depends(get_db)) -> Patron:
    """Resolve the caller from the id the upstream auth gateway forwards."""
    if x_patron_id is None:
        raise HTTPException(status_code=401, detail="X-Patron-Id header required")
    actor = db.get(Patron, x_patron_id)
    if not actor:
        raise HTTPException(status_code=401, detail="Unknown patron")
    return actor


def get_circulation(db: Session = Depends(get_db)) -> CirculationService:
    return CirculationService(db)
