from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

import crud
import models
import schemas
from blockchain_service import BlockchainService
from database import get_db
from deps import dump, get_current_user, ok, require_feature
from errors import ConflictError, NotFoundError, ValidationError

router = APIRouter()


def _get_owned_contact(db: Session, contact_id: int, user_id: int) -> models.Contact:
    contact = crud.get_contact(db, contact_id, user_id)
    if not contact:
        raise NotFoundError("Contact not found")
    return contact


@router.get("/", summary="Address book")
def list_contacts(current_user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(dump(schemas.Contact, crud.get_contacts(db, current_user.id)))


@router.get("/search", summary="Search contacts by name, address or notes")
def search_contacts(q: str = Query(..., min_length=1, max_length=100),
                    current_user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(dump(schemas.Contact, crud.search_contacts(db, current_user.id, q)))


@router.post("/", status_code=status.HTTP_201_CREATED, summary="Add a contact")
def create_contact(contact: schemas.ContactCreate,
                   current_user: models.User = Depends(get_current_user),
                   tenant: Optional[models.WhiteLabelClient] = Depends(require_feature("contacts")),
                   db: Session = Depends(get_db)):
    if not BlockchainService.is_valid_address(contact.address):
        raise ValidationError("Invalid address", details=[{"field": "address", "message": "not a valid address"}])
    if crud.get_contact_by_address(db, current_user.id, contact.address):
        raise ConflictError("Contact with this address already exists")
    return ok(dump(schemas.Contact, crud.create_contact(db, contact, current_user.id)), message="Contact added")


@router.get("/{contact_id}", summary="Contact details")
def get_contact(contact_id: int, current_user: models.User = Depends(get_current_user),
                db: Session = Depends(get_db)):
    return ok(dump(schemas.Contact, _get_owned_contact(db, contact_id, current_user.id)))


@router.put("/{contact_id}", summary="Rename a contact or edit its notes")
def update_contact(contact_id: int, update: schemas.ContactUpdate,
                   current_user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    contact = crud.update_contact(db, _get_owned_contact(db, contact_id, current_user.id), update)
    return ok(dump(schemas.Contact, contact), message="Contact updated")


@router.delete("/{contact_id}", summary="Delete a contact")
def delete_contact(contact_id: int, current_user: models.User = Depends(get_current_user),
                   db: Session = Depends(get_db)):
    crud.delete_contact(db, _get_owned_contact(db, contact_id, current_user.id))
    return ok(message="Contact deleted")
