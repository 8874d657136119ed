from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tfdash.models import TemplateCreate, TemplateORM, TemplateRead, VariableSpec
from tfdash.services.errors import IntegrityException, NotFoundException
from tfdash.services.variables import validate_variable_schema


def _to_read(template: TemplateORM) -> TemplateRead:
    return TemplateRead(
        id=template.id,
        name=template.name,
        description=template.description,
        code=template.code,
        variable_schema=[VariableSpec.model_validate(spec) for spec in template.variable_schema_json],
        created_at=template.created_at,
        deleted_at=template.deleted_at,
    )


def create_template(session: Session, payload: TemplateCreate) -> TemplateRead:
    specs = [spec.model_dump() for spec in payload.variable_schema]
    validate_variable_schema(specs)
    if session.get(TemplateORM, payload.id) is not None:
        raise IntegrityException(f"Template '{payload.id}' already exists")
    template = TemplateORM(
        id=payload.id,
        name=payload.name,
        description=payload.description,
        code=payload.code,
        variable_schema_json=specs,
    )
    session.add(template)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise IntegrityException(f"Template '{payload.id}' already exists") from exc
    session.refresh(template)
    return _to_read(template)


def list_templates(session: Session) -> list[TemplateRead]:
    templates = session.exec(
        select(TemplateORM)
        .where(TemplateORM.deleted_at == None)  # noqa: E711
        .order_by(TemplateORM.id)
    ).all()
    return [_to_read(t) for t in templates]


def lookup(session: Session, template_id: str) -> TemplateORM:
    """Return the live template or raise NotFoundException. No side effects."""
    template = session.get(TemplateORM, template_id)
    if not template or template.deleted_at:
        raise NotFoundException(f"Template '{template_id}' not found")
    return template


def get_template(session: Session, *, template_id: str) -> TemplateRead:
    return _to_read(lookup(session, template_id))


def delete_template(session: Session, *, template_id: str) -> TemplateRead:
    """Soft-delete a template. Existing deployments keep their template_id."""
    template = lookup(session, template_id)
    template.deleted_at = datetime.utcnow()
    session.add(template)
    session.commit()
    session.refresh(template)
    return _to_read(template)
