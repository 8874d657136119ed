from __future__ import annotations

import pytest

from tfdash.models import TemplateCreate, VariableSpec
from tfdash.services import templates as template_service
from tfdash.services.errors import IntegrityException, NotFoundException


def _payload(**overrides) -> TemplateCreate:
    fields = dict(
        id="s3-bucket",
        name="S3 bucket",
        description="Private bucket",
        code='resource "aws_s3_bucket" "this" {\n  bucket = var.bucket\n}\n',
        variable_schema=[
            VariableSpec(name="bucket", required=True),
            VariableSpec(name="versioning", type="bool", default=False),
        ],
    )
    fields.update(overrides)
    return TemplateCreate(**fields)


def test_create_and_get_template(db_session) -> None:
    created = template_service.create_template(db_session, _payload())

    assert created.id == "s3-bucket"
    assert [spec.name for spec in created.variable_schema] == ["bucket", "versioning"]
    assert created.variable_schema[1].default is False

    fetched = template_service.get_template(db_session, template_id="s3-bucket")
    assert fetched.code == created.code
    assert fetched.variable_schema == created.variable_schema


def test_duplicate_template_id_is_rejected(db_session) -> None:
    template_service.create_template(db_session, _payload())
    with pytest.raises(IntegrityException):
        template_service.create_template(db_session, _payload(name="Another"))


def test_invalid_schema_is_rejected(db_session) -> None:
    with pytest.raises(IntegrityException):
        template_service.create_template(
            db_session,
            _payload(variable_schema=[VariableSpec(name="size", type="number", default="large")]),
        )
    assert template_service.list_templates(db_session) == []


def test_lookup_has_no_side_effects_and_misses_unknown_ids(db_session) -> None:
    with pytest.raises(NotFoundException):
        template_service.lookup(db_session, "does-not-exist")
    assert template_service.list_templates(db_session) == []


def test_soft_deleted_templates_are_not_found(db_session) -> None:
    template_service.create_template(db_session, _payload())
    template_service.create_template(db_session, _payload(id="vpc", name="VPC"))

    deleted = template_service.delete_template(db_session, template_id="s3-bucket")

    assert deleted.id == "s3-bucket"
    assert deleted.deleted_at is not None
    assert [t.id for t in template_service.list_templates(db_session)] == ["vpc"]
    with pytest.raises(NotFoundException):
        template_service.lookup(db_session, "s3-bucket")
    with pytest.raises(NotFoundException):
        template_service.delete_template(db_session, template_id="s3-bucket")
