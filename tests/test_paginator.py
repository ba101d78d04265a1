"""Tests for page-driven product collection."""

import pytest

from aliprice.ingest.negotiator import NegotiationResult
from aliprice.ingest.normalizer import ProductRecord
from aliprice.ingest.paginator import CatalogQuery, Paginator


def product(pid, category=2, sold=100, title=None):
    return ProductRecord(id=str(pid), category_id_1=category, sold=sold, title=title)


class FakePageSource:
    """Serves scripted pages; page numbers beyond the script are empty."""

    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    async def query_products_page(self, page_no, page_size=50, category_id=None, keywords=None, sort=None):
        self.requested.append((page_no, page_size, category_id, keywords))
        return NegotiationResult(items=list(self.pages.get(page_no, [])))


def paginator(source):
    return Paginator(source, page_delay=0)


@pytest.mark.asyncio
async def test_full_pages_then_empty_page():
    pages = {n: [product(n * 1000 + i) for i in range(50)] for n in (1, 2, 3)}
    source = FakePageSource(pages)

    items = await paginator(source).collect(CatalogQuery(category_id=2, page_size=50))

    assert len(items) == 150
    assert [r[0] for r in source.requested] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_short_page_is_final():
    pages = {1: [product(i) for i in range(50)], 2: [product(100 + i) for i in range(23)]}
    source = FakePageSource(pages)

    items = await paginator(source).collect(CatalogQuery(category_id="2"))

    assert len(items) == 73
    assert len({p.id for p in items}) == 73
    assert [r[0] for r in source.requested] == [1, 2]


@pytest.mark.asyncio
async def test_duplicate_id_keeps_later_record():
    pages = {
        1: [product(1, title="old")] + [product(10 + i) for i in range(49)],
        2: [product(1, title="new"), product(2)],
    }
    items = await paginator(FakePageSource(pages)).collect(CatalogQuery(category_id=2))

    by_id = {p.id: p for p in items}
    assert len(items) == 51
    assert by_id["1"].title == "new"


@pytest.mark.asyncio
async def test_off_category_items_dropped_without_ending_crawl():
    pages = {
        1: [product(i, category=99) for i in range(50)],
        2: [product(100 + i) for i in range(10)],
    }
    source = FakePageSource(pages)

    items = await paginator(source).collect(CatalogQuery(category_id=2))

    assert len(items) == 10
    assert len(source.requested) == 2


@pytest.mark.asyncio
async def test_second_level_category_matches():
    pages = {1: [ProductRecord(id="7", category_id_1=1, category_id_2=205)]}
    items = await paginator(FakePageSource(pages)).collect(CatalogQuery(category_id=205))
    assert [p.id for p in items] == ["7"]


@pytest.mark.asyncio
async def test_page_ceiling():
    pages = {n: [product(n * 1000 + i) for i in range(50)] for n in range(1, 10)}
    source = FakePageSource(pages)

    items = await paginator(source).collect(CatalogQuery(category_id=2, max_pages=2))

    assert len(items) == 100
    assert len(source.requested) == 2


@pytest.mark.asyncio
async def test_start_page_and_page_size_cap():
    source = FakePageSource({})
    query = CatalogQuery(category_id=2, start_page=5, page_size=500)

    await paginator(source).collect(query)

    assert query.page_size == 50
    assert source.requested == [(5, 50, 2, None)]


@pytest.mark.asyncio
async def test_keyword_query_with_min_sold():
    pages = {1: [product(1, category=3, sold=5), product(2, category=7, sold=80)]}
    source = FakePageSource(pages)

    items = await paginator(source).collect(CatalogQuery(keywords="mug", min_sold=50))

    assert [p.id for p in items] == ["2"]
    assert source.requested[0][3] == "mug"
