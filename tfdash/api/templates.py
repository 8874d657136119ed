from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from tfdash.db import get_session
from tfdash.models import TemplateCreate, TemplateRead
from tfdash.services import templates as template_service

router = APIRouter(prefix="/templates", tags=["templates"])


@router.post("", response_model=TemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(payload: TemplateCreate, session: Session = Depends(get_session)) -> TemplateRead:
    return template_service.create_template(session, payload)


@router.get("", response_model=list[TemplateRead])
def list_templates(session: Session = Depends(get_session)) -> list[TemplateRead]:
    return template_service.list_templates(session)


@router.get("/{template_id}", response_model=TemplateRead)
def get_template(template_id: str, session: Session = Depends(get_session)) -> TemplateRead:
    return template_service.get_template(session, template_id=template_id)


@router.delete("/{template_id}", status_code=204)
def delete_template_endpoint(template_id: str, session: Session = Depends(get_session)) -> None:
    template_service.delete_template(session, template_id=template_id)
