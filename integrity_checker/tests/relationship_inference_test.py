import pytest

from integrity_checker.data_processing.data_types import (
    DimensionKey,
    MetadataUnavailableError,
    TableDescriptor,
    TableKind,
)
from integrity_checker.relationships.discovery import (
    TableDefinitionMetadataProvider,
    column_embeds_key,
    discover_relationships,
    has_name_prefix,
    iter_relationship_candidates,
)


def _dimension(name: str, key: str) -> DimensionKey:
    table = TableDescriptor(schema_name="dbo", table_name=name, kind=TableKind.DIMENSION)
    return DimensionKey(table=table, primary_key=key)


def _fact(name: str, *columns: str) -> TableDescriptor:
    return TableDescriptor(
        schema_name="dbo", table_name=name, columns=columns, kind=TableKind.FACT
    )


def test_column_embeds_key_strips_quoting() -> None:
    assert column_embeds_key("[DeliveryCustomerKey]", "[CustomerKey]")
    assert column_embeds_key('"CustomerKey"', "`CustomerKey`")
    assert not column_embeds_key("Customer_Key", "CustomerKey")
    assert not column_embeds_key("CustomerKey", "")


def test_has_name_prefix_ignores_schema_and_case() -> None:
    assert has_name_prefix(TableDescriptor(schema_name="dim", table_name="DimDate"), "dim")
    assert not has_name_prefix(
        TableDescriptor(schema_name="dim", table_name="Date"), "dim"
    )


def test_iter_relationship_candidates_is_lazy_and_restartable() -> None:
    dimensions = [_dimension("dimProduct", "ProductKey"), _dimension("dimCustomer", "CustomerKey")]
    facts = [
        _fact("factSales", "ProductKey", "CustomerKey", "DeliveryCustomerKey"),
        _fact("factReturns", "ProductKey"),
    ]

    candidates = iter_relationship_candidates(dimensions, facts)
    first = next(candidates)
    assert (first.dimension.table_name, first.foreign_key) == ("dimCustomer", "CustomerKey")

    once = [rel.identity for rel in iter_relationship_candidates(dimensions, facts)]
    twice = [rel.identity for rel in iter_relationship_candidates(dimensions, facts)]
    assert once == twice
    assert once == [
        ("dbo.dimCustomer", "dbo.factSales", "CustomerKey"),
        ("dbo.dimCustomer", "dbo.factSales", "DeliveryCustomerKey"),
        ("dbo.dimProduct", "dbo.factReturns", "ProductKey"),
        ("dbo.dimProduct", "dbo.factSales", "ProductKey"),
    ]


def test_candidate_identities_are_unique() -> None:
    dimensions = [_dimension("dimCustomer", "CustomerKey")]
    facts = [_fact("factSales", "CustomerKey", "DeliveryCustomerKey", "BillToCustomerKey")]

    identities = [rel.identity for rel in iter_relationship_candidates(dimensions, facts)]

    assert len(identities) == len(set(identities)) == 3


def test_table_definitions_require_columns() -> None:
    with pytest.raises(ValueError):
        TableDefinitionMetadataProvider([{"table_name": "dimCustomer", "columns": []}])
    with pytest.raises(ValueError):
        TableDefinitionMetadataProvider([{"columns": [{"name": "CustomerKey"}]}])
    with pytest.raises(TypeError):
        TableDefinitionMetadataProvider(["dimCustomer"])


def test_table_definitions_accept_plain_column_names() -> None:
    provider = TableDefinitionMetadataProvider(
        [{"table_name": "factSales", "schema": "sales", "columns": ["CustomerKey", "Amount"]}]
    )

    (table,) = provider.list_tables("fact")

    assert table.name == "sales.factSales"
    assert provider.columns(table) == ["CustomerKey", "Amount"]
    assert provider.primary_key_column(table) is None


def test_metadata_failure_propagates() -> None:
    class _BrokenProvider:
        def list_tables(self, name_prefix):
            raise MetadataUnavailableError("catalog offline")

        def primary_key_column(self, table):
            raise AssertionError("not reached")

        def columns(self, table):
            raise AssertionError("not reached")

    with pytest.raises(MetadataUnavailableError):
        discover_relationships(_BrokenProvider())
