"""Unit tests for the batch persistence engine."""
from decimal import Decimal

import pytest

from catalog_import.errors.exceptions import ImportCancelledError, TransactionFatalError
from catalog_import.models.entities import (
    CategoryRecord,
    EntityGraph,
    EntityType,
    ImageRecord,
    PriceRecord,
    ProductRecord,
    StockRecord,
    VariantRecord,
)
from catalog_import.parsers import CatalogXmlParser
from catalog_import.services.cancellation import CancellationToken
from catalog_import.services.persistence import (
    PROGRESS_END,
    PROGRESS_START,
    BatchPersistenceEngine,
    KeyMaps,
    PersistOptions,
    UnresolvedReference,
    chunked,
    format_key,
)
from tests.helpers import FakeCatalogRepository


def _nonzero(counts):
    return {name: value for name, value in counts.items() if value}


def _product_graph(*codes: str) -> EntityGraph:
    """Products with one default variant each."""
    graph = EntityGraph()
    for code in codes:
        graph.products.append(ProductRecord(code=code, name=f"Product {code}"))
        graph.variants.append(VariantRecord(code=f"{code}-default", product_code=code))
    return graph


@pytest.fixture
def geko_graph(import_config, geko_feed) -> EntityGraph:
    return CatalogXmlParser(import_config).parse(geko_feed)


class TestHelpers:
    def test_chunked(self):
        assert [list(c) for c in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]

    def test_format_key(self):
        assert format_key("A") == "A"
        assert format_key(("V1", "retail", "EUR", 1)) == "V1/retail/EUR/1"

    def test_key_maps(self):
        keys = KeyMaps()
        keys.register(EntityType.PRODUCTS, {"P1": 1})

        assert keys.get(EntityType.PRODUCTS, "P1") == 1
        assert keys.get(EntityType.PRODUCTS, None) is None
        assert keys.get(EntityType.PRODUCTS, "P2") is None
        with pytest.raises(UnresolvedReference):
            keys.require(EntityType.PRODUCTS, "P2")


class TestPersistCreates:
    @pytest.mark.asyncio
    async def test_geko_document_creates_every_entity(self, repository, geko_graph):
        stats = await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph)

        assert _nonzero(stats.created_counts()) == {
            "categories": 1,
            "producers": 1,
            "units": 1,
            "products": 1,
            "variants": 1,
            "stocks": 1,
            "prices": 1,
            "images": 1,
        }
        assert stats.total_errors() == 0
        assert stats.errors == []

    @pytest.mark.asyncio
    async def test_children_reference_parent_ids(self, repository, geko_graph):
        await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph)

        product = repository.tables[EntityType.PRODUCTS]["TEST001"]
        variant = repository.tables[EntityType.VARIANTS]["VAR001"]
        price = repository.tables[EntityType.PRICES][("VAR001", "retail", "EUR", 1)]

        assert variant["product_id"] == product["id"]
        assert price["variant_id"] == variant["id"]
        assert price["net_price"] == Decimal("16.25")
        assert product["category_id"] == repository.tables[EntityType.CATEGORIES]["10"]["id"]
        assert product["producer_id"] == repository.tables[EntityType.PRODUCERS]["Acme"]["id"]

    @pytest.mark.asyncio
    async def test_unknown_optional_reference_is_left_unset(self, repository):
        graph = EntityGraph(products=[ProductRecord(code="P1", name="P1", category_id="missing")])

        await BatchPersistenceEngine(repository, PersistOptions()).persist(graph)

        assert repository.tables[EntityType.PRODUCTS]["P1"]["category_id"] is None

    @pytest.mark.asyncio
    async def test_rows_are_written_in_chunks(self, repository):
        graph = _product_graph("A", "B", "C", "D", "E")

        await BatchPersistenceEngine(repository, PersistOptions(batch_size=2)).persist(graph)

        product_chunks = [n for t, n in repository.insert_calls if t == EntityType.PRODUCTS]
        assert product_chunks == [2, 2, 1]
        assert repository.count(EntityType.VARIANTS) == 5


class TestReimport:
    @pytest.mark.asyncio
    async def test_second_run_updates_instead_of_duplicating(self, repository, geko_graph):
        await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph)
        before = repository.counts()

        stats = await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph)

        assert repository.counts() == before
        assert stats.total_created() == 0
        assert stats.total_updated() == 8

    @pytest.mark.asyncio
    async def test_existing_rows_skipped_without_update(self, repository, geko_graph):
        await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph)
        repository.update_calls.clear()

        stats = await BatchPersistenceEngine(
            repository, PersistOptions(update_existing=False)
        ).persist(geko_graph)

        assert stats.total_updated() == 0
        assert stats.total_skipped() == 8
        assert repository.update_calls == []

    @pytest.mark.asyncio
    async def test_new_child_resolves_stored_parent(self, repository):
        await BatchPersistenceEngine(repository, PersistOptions()).persist(_product_graph("P1"))
        graph = EntityGraph(
            variants=[VariantRecord(code="P1-red", product_code="P1")],
            stocks=[StockRecord(variant_code="P1-default", quantity=2)],
        )

        stats = await BatchPersistenceEngine(repository, PersistOptions()).persist(graph)

        assert stats.for_type("variants").created == 1
        assert stats.for_type("stocks").created == 1
        stored_product_id = repository.tables[EntityType.PRODUCTS]["P1"]["id"]
        assert repository.tables[EntityType.VARIANTS]["P1-red"]["product_id"] == stored_product_id

    @pytest.mark.asyncio
    async def test_duplicate_keys_within_document_are_skipped(self, repository):
        graph = EntityGraph(
            categories=[
                CategoryRecord(id="C1", name="First"),
                CategoryRecord(id="C1", name="Second"),
            ]
        )

        stats = await BatchPersistenceEngine(repository, PersistOptions()).persist(graph)

        assert stats.for_type("categories").created == 1
        assert stats.for_type("categories").skipped == 1
        assert repository.tables[EntityType.CATEGORIES]["C1"]["name"] == "First"


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failed_row_does_not_sink_its_chunk(self):
        repository = FakeCatalogRepository(
            fail_when=lambda t, row: t == EntityType.PRODUCTS and row["code"] == "P2"
        )
        graph = _product_graph("P1", "P2", "P3")

        stats = await BatchPersistenceEngine(repository, PersistOptions(batch_size=2)).persist(graph)

        assert set(repository.tables[EntityType.PRODUCTS]) == {"P1", "P3"}
        assert stats.for_type("products").created == 2
        assert stats.for_type("products").errors == 1
        # The failed product's variant has no parent to attach to
        assert stats.for_type("variants").created == 2
        assert stats.for_type("variants").skipped == 1
        assert stats.error_counts == {"batch_write": 1, "reference_unresolved": 1}

    @pytest.mark.asyncio
    async def test_failed_update_is_isolated(self, repository):
        await BatchPersistenceEngine(repository, PersistOptions()).persist(_product_graph("P1", "P2"))
        repository.fail_when = lambda t, row: t == EntityType.PRODUCTS and row["code"] == "P1"

        stats = await BatchPersistenceEngine(repository, PersistOptions()).persist(_product_graph("P1", "P2"))

        assert stats.for_type("products").updated == 1
        assert stats.for_type("products").errors == 1
        assert stats.errors[0].identifier == "P1"

    @pytest.mark.asyncio
    async def test_unresolved_children_are_counted(self, repository):
        graph = EntityGraph(
            variants=[VariantRecord(code="V1", product_code="GHOST")],
            prices=[PriceRecord(variant_code="V1", gross_price=Decimal("1"))],
        )

        stats = await BatchPersistenceEngine(repository, PersistOptions()).persist(graph)

        assert stats.for_type("variants").skipped == 1
        assert stats.for_type("prices").skipped == 1
        assert stats.error_counts == {"reference_unresolved": 2}
        assert repository.counts() == {}

    @pytest.mark.asyncio
    async def test_error_entries_are_bounded(self, repository):
        graph = EntityGraph(
            variants=[VariantRecord(code=f"V{i}", product_code="GHOST") for i in range(5)]
        )

        stats = await BatchPersistenceEngine(
            repository, PersistOptions(max_error_entries=2)
        ).persist(graph)

        assert len(stats.errors) == 2
        assert stats.truncated_errors == 3
        assert stats.error_counts == {"reference_unresolved": 5}

    @pytest.mark.asyncio
    async def test_transaction_fatal_propagates(self, geko_graph):
        repository = FakeCatalogRepository(fatal_on=EntityType.PRODUCTS)

        with pytest.raises(TransactionFatalError):
            await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph)


class TestOptionsAndControl:
    @pytest.mark.asyncio
    async def test_skip_images(self, repository, geko_graph):
        stats = await BatchPersistenceEngine(repository, PersistOptions(skip_images=True)).persist(geko_graph)

        assert repository.count(EntityType.IMAGES) == 0
        assert stats.for_type("images").skipped == 1
        assert stats.for_type("products").created == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_writing(self, repository, geko_graph):
        token = CancellationToken("job-1")
        token.cancel()

        with pytest.raises(ImportCancelledError):
            await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph, token)

        assert repository.insert_calls == []

    @pytest.mark.asyncio
    async def test_cancellation_observed_between_entity_types(self, repository, geko_graph):
        token = CancellationToken("job-1")

        async def on_progress(percent, stage):
            if stage == "persisting products":
                token.cancel()

        with pytest.raises(ImportCancelledError):
            await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph, token, on_progress)

        assert repository.count(EntityType.PRODUCTS) == 1
        assert repository.count(EntityType.VARIANTS) == 0

    @pytest.mark.asyncio
    async def test_progress_stays_in_persistence_slice(self, repository, geko_graph):
        reported = []

        async def on_progress(percent, stage):
            reported.append(percent)

        await BatchPersistenceEngine(repository, PersistOptions()).persist(geko_graph, progress=on_progress)

        assert reported == sorted(reported)
        assert all(PROGRESS_START <= p <= PROGRESS_END for p in reported)
        assert reported[-1] == PROGRESS_END

    @pytest.mark.asyncio
    async def test_image_rows_map_sort_order(self, repository):
        graph = _product_graph("P1")
        graph.images.append(ImageRecord(product_code="P1", url="https://cdn.test/a.jpg", is_main=True, order=3))

        await BatchPersistenceEngine(repository, PersistOptions()).persist(graph)

        image = repository.tables[EntityType.IMAGES][("P1", "https://cdn.test/a.jpg")]
        assert image["sort_order"] == 3
        assert image["is_main"] is True
