import re
from datetime import datetime, timezone

from bson.objectid import ObjectId

import utils
from schemas import effective_price
from utils import generate_slug, serialize_doc

SLUG_RE = re.compile(r"^[a-z0-9-]+-\d+$")


def test_slug_sanitizes_name():
    slug = generate_slug("Fruits & Vegetables!!  Fresh")
    assert SLUG_RE.match(slug)
    assert slug.startswith("fruits-and-vegetables-fresh-")


def test_slug_collapses_hyphens():
    assert generate_slug("a - - b").startswith("a-b-")


def test_slug_changes_over_time(monkeypatch):
    ticks = [1000500, 1000000]
    monkeypatch.setattr(utils, "_now_ms", ticks.pop)
    assert generate_slug("Mango") == "mango-1000000"
    assert generate_slug("Mango") == "mango-1000500"


def test_slug_of_empty_name_is_only_the_suffix():
    assert re.match(r"^-\d+$", generate_slug(""))


def test_serialize_doc_nested():
    oid, ref = ObjectId(), ObjectId()
    when = datetime(2024, 1, 2, tzinfo=timezone.utc)
    out = serialize_doc({"_id": oid, "createdAt": when, "cart": [{"product": ref, "quantity": 2}]})
    assert out == {
        "id": str(oid),
        "createdAt": when.isoformat(),
        "cart": [{"product": str(ref), "quantity": 2}],
    }


def test_effective_price():
    assert effective_price({"regular": 100, "discount": 80}) == 80
    assert effective_price({"regular": 100, "discount": None}) == 100
