from __future__ import annotations

import pytest
import requests
from pydantic import ValidationError

from conftest import make_response, page
from joptool import (
    ApiError,
    Note,
    NotFoundError,
    PaginationError,
    REQUEST_TIMEOUT,
    Tag,
    UnexpectedResponseError,
)


def test_pages_are_concatenated_in_order(client, session) -> None:
    session.add(
        "GET",
        "/tags",
        page([{"id": "a"}, {"id": "b"}], has_more=True),
        page([{"id": "c"}]),
    )

    tags = client.tags()

    assert [t.id for t in tags] == ["a", "b", "c"]
    calls = session.calls_to("GET", "/tags")
    assert [c.params["page"] for c in calls] == [1, 2]


def test_empty_final_page_is_an_empty_result(client, session) -> None:
    session.add("GET", "/folders", page([]))

    assert client.folders() == []
    assert len(session.calls) == 1


def test_listing_sends_token_and_default_fields(client, session) -> None:
    session.add("GET", "/notes", page([]))

    client.notes()

    params = session.calls[0].params
    assert params["token"] == "secret"
    assert params["fields"] == "id,parent_id,title"
    assert "order_by" not in params
    assert "order_dir" not in params


def test_resources_default_to_id_and_title(client, session) -> None:
    session.add("GET", "/resources", page([{"id": "r1", "title": "scan.pdf", "mime": "application/pdf"}]))

    resources = client.resources()

    assert session.calls[0].params["fields"] == "id,title"
    assert resources[0].title == "scan.pdf"


def test_order_direction_is_upper_cased(client, session) -> None:
    session.add("GET", "/notes", page([]))

    client.notes(order_by="updated_time", order_dir="desc")

    params = session.calls[0].params
    assert params["order_by"] == "updated_time"
    assert params["order_dir"] == "DESC"


def test_empty_order_direction_is_omitted(client, session) -> None:
    session.add("GET", "/notes", page([]))

    client.notes(order_by="title", order_dir="")

    assert "order_dir" not in session.calls[0].params


def test_failure_mid_listing_keeps_partial_items(client, session) -> None:
    session.add(
        "GET",
        "/notes",
        page([{"id": "n1"}], has_more=True),
        make_response(500, text="database locked"),
    )

    with pytest.raises(PaginationError) as excinfo:
        client.notes()

    err = excinfo.value
    assert err.page == 2
    assert err.items == [{"id": "n1"}]
    assert isinstance(err.__cause__, ApiError)
    assert not err.not_found
    assert "database locked" in str(err)


def test_transport_failure_aborts_listing(client, session) -> None:
    session.add("GET", "/folders", requests.ConnectionError("gone"))

    with pytest.raises(PaginationError) as excinfo:
        client.folders()

    assert excinfo.value.items == []
    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)


def test_listing_requires_paged_shape(client, session) -> None:
    session.add("GET", "/tags", make_response(payload=[{"id": "a"}]))

    with pytest.raises(PaginationError) as excinfo:
        client.tags()

    assert isinstance(excinfo.value.__cause__, UnexpectedResponseError)


def test_missing_tag_listing_is_flagged_not_found(client, session) -> None:
    session.add("GET", "/tags/nope/notes", make_response(404, text="Not Found"))

    with pytest.raises(PaginationError) as excinfo:
        client.tag_notes("nope")

    assert excinfo.value.not_found


def test_get_by_id(client, session) -> None:
    session.add("GET", "/notes/n1", make_response(payload={"id": "n1", "title": "Shopping", "unknown": 1}))

    note = client.note("n1", "id,title")

    assert note == Note(id="n1", title="Shopping")
    assert session.calls[0].params == {"fields": "id,title", "token": "secret"}


def test_get_by_id_not_found_is_distinct(client, session) -> None:
    session.add("GET", "/tags/missing", make_response(404, text="Not Found"))

    with pytest.raises(NotFoundError) as excinfo:
        client.tag("missing")

    assert excinfo.value.status_code == 404


def test_get_by_id_other_errors_are_generic(client, session) -> None:
    session.add("GET", "/folders/f1", make_response(500, text="boom"))

    with pytest.raises(ApiError) as excinfo:
        client.folder("f1")

    assert not isinstance(excinfo.value, NotFoundError)


def test_error_messages_do_not_leak_token(client, session) -> None:
    session.add("GET", "/tags/t1", make_response(403, text="Invalid token"))

    with pytest.raises(ApiError) as excinfo:
        client.tag("t1")

    assert "secret" not in str(excinfo.value)
    assert excinfo.value.url == "http://localhost:41184/tags/t1"


def test_redirect_is_unexpected(client, session) -> None:
    session.add("GET", "/notes/n1", make_response(302, text=""))

    with pytest.raises(UnexpectedResponseError):
        client.note("n1")


def test_every_client_request_has_the_short_timeout(client, session) -> None:
    session.add("GET", "/tags", page([{"id": "t1"}]))
    session.add("GET", "/notes/n1", make_response(payload={"id": "n1"}))
    session.add("POST", "/tags/t1/notes", make_response(payload={}))
    session.add("DELETE", "/tags/t1", make_response(200))

    client.tags()
    client.note("n1")
    client.tag_note("t1", "n1")
    client.delete_tag("t1")
    client.ping()

    assert len(session.calls) == 5
    assert all(c.timeout == REQUEST_TIMEOUT for c in session.calls)


def test_delete_tag(client, session) -> None:
    session.add("DELETE", "/tags/t1", make_response(200))

    client.delete_tag("t1")

    assert session.calls[0].method == "DELETE"


def test_delete_missing_tag(client, session) -> None:
    session.add("DELETE", "/tags/t1", make_response(404, text="Not Found"))

    with pytest.raises(NotFoundError):
        client.delete_tag("t1")


def test_untag_note(client, session) -> None:
    session.add("DELETE", "/tags/t1/notes/n1", make_response(200))

    client.untag_note("t1", "n1")

    assert session.calls[0].path == "/tags/t1/notes/n1"


def test_search_passes_type_filter(client, session) -> None:
    session.add("GET", "/search", page([{"id": "f1", "title": "Work", "parent_id": ""}]))

    items = client.search("Work", "folder")

    assert [i.id for i in items] == ["f1"]
    params = session.calls[0].params
    assert params["query"] == "Work"
    assert params["type"] == "folder"


def test_ping(client, session) -> None:
    assert client.ping() is False
    session.add("GET", "/ping", make_response(text="JoplinClipperServer"))
    assert client.ping() is True
    assert "token" not in session.calls[-1].params


def test_records_ignore_unknown_and_null_fields() -> None:
    tag = Tag.from_dict({"id": "t1", "title": None, "colour": "red"})

    assert tag.id == "t1"
    assert tag.title == ""
    assert tag.created_time == 0


def test_records_convert_numeric_strings() -> None:
    note = Note.from_dict({"id": "n1", "latitude": "48.85000000", "is_todo": "1", "order": 5})

    assert isinstance(note.latitude, float)
    assert note.latitude == 48.85
    assert note.is_todo == 1
    assert note.order == 5.0


def test_records_reject_values_of_the_wrong_kind() -> None:
    with pytest.raises(ValidationError):
        Note.from_dict({"id": "n1", "created_time": "yesterday"})
