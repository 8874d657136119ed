from datetime import datetime
from typing import Optional, Any

from sqlmodel import Field, SQLModel, Relationship
from sqlalchemy import Column, ForeignKey, Index, JSON, Text, String

from tfdash.services.pipeline_constants import (
    DEPLOYMENT_STATUS_PENDING,
    JOB_STATUS_RUNNING,
    OPEN_JOB_STATUSES,
)


class VariableSpec(SQLModel):
    name: str
    type: str = "string"
    description: Optional[str] = None
    required: bool = False
    # None means "no default declared"
    default: Optional[Any] = None
    allowed_values: Optional[list[Any]] = None


class TemplateBase(SQLModel):
    name: str
    description: Optional[str] = None
    code: str


class TemplateORM(TemplateBase, table=True):
    __tablename__ = "template"

    id: str = Field(primary_key=True)
    name: str = Field(index=True)
    code: str = Field(sa_column=Column(Text(), nullable=False))
    variable_schema_json: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    deleted_at: Optional[datetime] = Field(default=None)


class TemplateCreate(TemplateBase):
    id: str = Field(min_length=1, max_length=63)
    variable_schema: list[VariableSpec] = Field(default_factory=list)


class TemplateRead(TemplateBase):
    id: str
    variable_schema: list[VariableSpec]
    created_at: datetime
    deleted_at: Optional[datetime] = None


class DeploymentBase(SQLModel):
    name: str
    template_id: str
    environment: str = "dev"
    variables: dict[str, Any] = Field(default_factory=dict)


class DeploymentORM(DeploymentBase, table=True):
    __tablename__ = "deployment"

    id: str = Field(primary_key=True)
    name: str = Field(sa_column=Column(String(), nullable=False, unique=True, index=True))
    # No foreign key: the template store is consulted at launch time, so a
    # record may reference a template that does not (or no longer) exist.
    template_id: str = Field(index=True)
    environment: str = Field(default="dev", index=True)
    variables: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    status: str = Field(default=DEPLOYMENT_STATUS_PENDING, nullable=False, index=True)
    workspace_path: Optional[str] = Field(default=None)
    log: str = Field(default="", sa_column=Column(Text(), nullable=False))
    state_snapshot: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    last_action: Optional[str] = Field(default=None)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    jobs: list["PipelineJobORM"] = Relationship(back_populates="deployment")


class DeploymentCreate(DeploymentBase):
    name: str = Field(min_length=1, max_length=128)
    template_id: str = Field(min_length=1)


class DeploymentRead(DeploymentBase):
    id: str
    status: str
    workspace_path: Optional[str] = None
    log: str = ""
    state_snapshot: Optional[str] = None
    last_action: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DeploymentOutput(SQLModel):
    value: Optional[Any] = None
    type: Optional[Any] = None
    sensitive: bool = False


class EnvironmentStats(SQLModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class DeploymentStats(SQLModel):
    total: int = 0
    # running + destroying
    active: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_environment: dict[str, EnvironmentStats] = Field(default_factory=dict)


class PipelineJobBase(SQLModel):
    deployment_id: str
    pipeline: str
    status: str = Field(default=JOB_STATUS_RUNNING)
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    last_error: Optional[str] = None


class PipelineJobORM(PipelineJobBase, table=True):
    __tablename__ = "pipeline_job"
    __table_args__ = (
        Index(
            "uq_open_pipeline_job_per_deployment",
            "deployment_id",
            unique=True,
            sqlite_where=Column("status").in_(OPEN_JOB_STATUSES),
            postgresql_where=Column("status").in_(OPEN_JOB_STATUSES),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    deployment_id: str = Field(
        sa_column=Column(
            String(),
            ForeignKey("deployment.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )
    )
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    deployment: DeploymentORM = Relationship(back_populates="jobs")
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)


class PipelineJobRead(PipelineJobBase):
    id: int
    created_at: datetime
    updated_at: datetime
