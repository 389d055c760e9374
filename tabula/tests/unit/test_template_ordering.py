from __future__ import annotations

import pytest

from tabula.core.errors import CircularDependencyError
from tabula.domain.payloads import TemplateSpec
from tabula.services.provisioning import sort_templates


def _template(template_id: str, *dependencies: str) -> TemplateSpec:
    return TemplateSpec(id=template_id, name=template_id.title(), dependencies=list(dependencies))


def _ids(templates: list[TemplateSpec]) -> list[str]:
    return [template.id for template in templates]


def test_dependencies_come_before_dependents() -> None:
    ordered = _ids(
        sort_templates(
            [
                _template("orders", "customers", "products"),
                _template("customers"),
                _template("line_items", "orders", "products"),
                _template("products"),
            ]
        )
    )
    assert ordered.index("customers") < ordered.index("orders")
    assert ordered.index("products") < ordered.index("orders")
    assert ordered.index("orders") < ordered.index("line_items")


def test_independent_templates_are_emitted_first() -> None:
    ordered = _ids(sort_templates([_template("b", "a"), _template("a"), _template("c")]))
    assert ordered == ["a", "c", "b"]


def test_cycle_names_the_offending_template() -> None:
    with pytest.raises(CircularDependencyError) as excinfo:
        sort_templates([_template("a", "b"), _template("b", "c"), _template("c", "a")])
    assert excinfo.value.template_id in {"a", "b", "c"}
    assert excinfo.value.code == "CIRCULAR_DEPENDENCY"


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CircularDependencyError) as excinfo:
        sort_templates([_template("a", "a")])
    assert excinfo.value.template_id == "a"


def test_dependencies_outside_the_batch_do_not_affect_order() -> None:
    ordered = _ids(sort_templates([_template("a", "missing"), _template("b")]))
    assert ordered == ["b", "a"]
