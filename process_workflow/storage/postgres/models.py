"""
SQLAlchemy models for PostgreSQL persistence.

Implements durable storage for workflow graphs and their published versions.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


class WorkflowTemplateModel(Base):
    """
    Stores the current graph of a workflow.

    The row holds the draft while one is being edited, otherwise the latest
    published state. Nodes and edges are child rows.
    """

    __tablename__ = "workflow_templates"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    process_template_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_process_template_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default="draft", index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Viewport, opaque to the graph semantics
    canvas_settings: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    # Timestamps
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    # Relationships
    nodes: Mapped[list["WorkflowNodeModel"]] = relationship(
        back_populates="workflow",
        lazy="selectin",
        cascade="all, delete-orphan"
    )
    edges: Mapped[list["WorkflowEdgeModel"]] = relationship(
        back_populates="workflow",
        lazy="selectin",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index(
            "ix_workflow_templates_template_pair",
            "process_template_id",
            "sub_process_template_id",
            "status",
        ),
    )


class WorkflowNodeModel(Base):
    """A node of a current workflow graph."""

    __tablename__ = "workflow_nodes"

    workflow_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        primary_key=True
    )
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    position_x: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    position_y: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    width: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    height: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    config: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    workflow: Mapped[WorkflowTemplateModel] = relationship(back_populates="nodes")


class WorkflowEdgeModel(Base):
    """An edge of a current workflow graph."""

    __tablename__ = "workflow_edges"

    workflow_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        primary_key=True
    )
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    source_node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_node_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    target_handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    branch_label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    animated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    workflow: Mapped[WorkflowTemplateModel] = relationship(back_populates="edges")

    __table_args__ = (
        Index("ix_workflow_edges_source", "workflow_id", "source_node_id"),
        Index("ix_workflow_edges_target", "workflow_id", "target_node_id"),
    )


class WorkflowTemplateVersionModel(Base):
    """
    Immutable snapshot of a published graph.

    Only the status column changes after insertion (active -> archived).
    """

    __tablename__ = "workflow_template_versions"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    workflow_id: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")

    # Persisted layout of the whole graph, viewport included
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("workflow_id", "version", name="uq_workflow_template_version"),
    )
