"""Tests for READ/WRITE classification and role capabilities."""

from stockgate.actions import TOOLS
from stockgate.classifier import available_tools, capabilities_for_role, classify


class TestClassify:
    def test_read_tool(self):
        result = classify("check_inventory", capabilities_for_role("FIELD"))
        assert result.kind == "READ"
        assert not result.rejected

    def test_write_tool(self):
        result = classify("create_order", capabilities_for_role("FIELD"))
        assert result.kind == "WRITE"
        assert result.capability == "orders:create"

    def test_write_without_capability_is_rejected(self):
        result = classify("update_inventory", capabilities_for_role("FIELD"))
        assert result.rejected
        assert result.capability == "inventory:adjust"
        assert "update_inventory" in result.reason

    def test_unknown_tool_is_rejected(self):
        result = classify("drop_tables", capabilities_for_role("ADMIN"))
        assert result.rejected
        assert result.capability is None

    def test_warehouse_can_adjust(self):
        assert classify("update_inventory", capabilities_for_role("WAREHOUSE")).kind == "WRITE"


class TestCapabilities:
    def test_role_is_case_insensitive(self):
        assert capabilities_for_role("warehouse") == capabilities_for_role("WAREHOUSE")

    def test_unknown_role_has_nothing(self):
        assert capabilities_for_role("GUEST") == frozenset()
        assert capabilities_for_role("") == frozenset()

    def test_every_tool_is_read_or_write(self):
        for tool in TOOLS.values():
            assert tool.kind in ("READ", "WRITE")

    def test_mutating_tools_are_write(self):
        writes = {name for name, t in TOOLS.items() if t.kind == "WRITE"}
        assert writes == {
            "create_order", "pull_order_items", "request_branch_transfer", "update_inventory"
        }


def test_available_tools_follow_role():
    field_tools = [t.name for t in available_tools(capabilities_for_role("FIELD"))]
    assert "create_order" in field_tools
    assert "search_orders" not in field_tools
    assert "update_inventory" not in field_tools

    admin_tools = [t.name for t in available_tools(capabilities_for_role("ADMIN"))]
    assert admin_tools == list(TOOLS)
