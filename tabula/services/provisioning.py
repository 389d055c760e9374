from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tabula.core.errors import CircularDependencyError, NotFoundError, TabulaError
from tabula.domain.payloads import TemplateSpec
from tabula.persistence.repos import schema as schema_repo
from tabula.services.audit import EVENT_TEMPLATE_FAILED, record_event
from tabula.services.schema_registry import create_columns, create_table


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProvisionedTable:
    template_id: str
    table_id: int
    name: str
    column_ids: list[int]


@dataclass(frozen=True)
class ProvisioningFailure:
    template_id: str
    code: str
    message: str


@dataclass
class ProvisioningResult:
    created: list[ProvisionedTable] = field(default_factory=list)
    errors: list[ProvisioningFailure] = field(default_factory=list)


def sort_templates(templates: list[TemplateSpec]) -> list[TemplateSpec]:
    """Order templates so each one follows every template it depends on.

    Depth-first visit with a temporarily-visited set; a back edge raises
    ``CircularDependencyError`` naming the template where the cycle closes.
    Templates without dependencies are emitted first, then the rest in input
    order. Dependencies on ids outside the batch are left for provisioning to
    report, since they cannot be resolved by ordering.
    """
    by_id = {template.id: template for template in templates}
    visited: set[str] = set()
    visiting: set[str] = set()
    ordered: list[TemplateSpec] = []

    def visit(template: TemplateSpec) -> None:
        if template.id in visited:
            return
        if template.id in visiting:
            raise CircularDependencyError(template.id)
        visiting.add(template.id)
        for dependency in template.dependencies:
            target = by_id.get(dependency)
            if target is not None:
                visit(target)
        visiting.discard(template.id)
        visited.add(template.id)
        ordered.append(template)

    independent = [template for template in templates if not template.dependencies]
    dependent = [template for template in templates if template.dependencies]
    for template in independent + dependent:
        visit(template)
    return ordered


async def provision_template_batch(
    session: AsyncSession,
    *,
    tenant_id: str,
    database_id: int,
    templates: list[TemplateSpec],
    actor_id: str | None = None,
) -> ProvisioningResult:
    # Cycles abort the whole batch before anything is written.
    ordered = sort_templates(templates)
    if await schema_repo.get_database_for_tenant(session, tenant_id, database_id) is None:
        raise NotFoundError("Database not found", database_id=database_id)

    result = ProvisioningResult()
    created_ids: dict[str, int] = {}
    for template in ordered:
        try:
            missing = [dependency for dependency in template.dependencies if dependency not in created_ids]
            if missing:
                raise NotFoundError(
                    f"Table for dependency '{missing[0]}' not found among created tables",
                    template_id=template.id,
                    dependency=missing[0],
                )
            table = await create_table(
                session,
                tenant_id=tenant_id,
                database_id=database_id,
                name=template.name,
                description=template.description,
                is_protected=template.is_protected,
                protected_type=template.protected_type,
                actor_id=actor_id,
                commit=False,
            )
            columns = await create_columns(
                session,
                tenant_id=tenant_id,
                table_id=table.id,
                columns=template.columns,
                symbol_table={**created_ids, template.id: table.id},
                commit=False,
            )
            await session.commit()
        except TabulaError as exc:
            # One template's failure is recorded and the remainder still runs.
            await session.rollback()
            result.errors.append(
                ProvisioningFailure(template_id=template.id, code=exc.code, message=exc.message)
            )
            logger.warning(
                "template_provision_failed tenant_id=%s template_id=%s code=%s",
                tenant_id,
                template.id,
                exc.code,
            )
            await record_event(
                session=session,
                tenant_id=tenant_id,
                actor_type="user",
                actor_id=actor_id,
                event_type=EVENT_TEMPLATE_FAILED,
                outcome="failure",
                resource_type="template",
                resource_id=template.id,
                metadata={"database_id": database_id, "message": exc.message},
                error_code=exc.code,
                commit=True,
            )
            continue

        created_ids[template.id] = table.id
        result.created.append(
            ProvisionedTable(
                template_id=template.id,
                table_id=table.id,
                name=table.name,
                column_ids=[column.id for column in columns],
            )
        )
    logger.info(
        "template_batch_provisioned tenant_id=%s database_id=%s created=%s failed=%s",
        tenant_id,
        database_id,
        len(result.created),
        len(result.errors),
    )
    return result
