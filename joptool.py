#!/usr/bin/env python3
"""
Joplin Data API command-line client.

Finds the Joplin clipper server on the local machine, pairs with it when no
API token is configured yet, and lists, searches, deletes and creates tags,
notes, notebooks and resources from the terminal.
"""

import enum
import json
import logging
import os
import time
from functools import wraps
from operator import attrgetter
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

import click
import requests
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator


logger = logging.getLogger("joptool")

MIN_PORT = 41184
MAX_PORT = 41194
JOPLIN_PORTS = range(MIN_PORT, MAX_PORT + 1)
API_TOKEN_RETRIES = 20
POLL_INTERVAL = 1.0
REQUEST_TIMEOUT = 5.0
USER_AGENT = "joptool"

DEFAULT_FIELDS = "id,parent_id,title"
DEFAULT_RESOURCE_FIELDS = "id,title"
DEFAULT_CONFIG = "~/.joptool"
OUTPUT_FORMATS = ["text", "json", "yaml"]
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

ITEM_TYPES = [
    "note",
    "folder",
    "setting",
    "resource",
    "tag",
    "note_tag",
    "search",
    "alarm",
    "master_key",
    "item_change",
    "note_resource",
    "resource_local_state",
    "revision",
    "migration",
    "smart_filter",
    "command",
]


class JoplinError(Exception):
    """Base class for errors raised while talking to the Data API."""


class ApiError(JoplinError):
    """The Data API answered with an error status."""

    def __init__(self, status_code: int, method: str, url: str, response_text: str):
        super().__init__(f"Joplin API error {status_code} for {method} {url}: {response_text}")
        self.status_code = status_code
        self.method = method
        self.url = url
        self.response_text = response_text


class NotFoundError(ApiError):
    """The requested item does not exist."""


class UnexpectedResponseError(JoplinError):
    """The response is neither a success nor a recognised error."""

    def __init__(self, method: str, url: str, dump: str):
        super().__init__(f"Got unexpected response for {method} {url}, raw dump:\n{dump}")
        self.method = method
        self.url = url
        self.dump = dump


class PaginationError(JoplinError):
    """A page of a listing failed; ``items`` holds what was fetched before it.

    The failure that stopped the walk is available as ``__cause__``.
    """

    def __init__(self, path: str, page: int, items: List[Dict[str, Any]]):
        super().__init__(f"Fetching {path} failed on page {page}")
        self.path = path
        self.page = page
        self.items = items

    def __str__(self) -> str:
        if self.__cause__ is None:
            return super().__str__()
        return f"{super().__str__()}: {self.__cause__}"

    @property
    def not_found(self) -> bool:
        return isinstance(self.__cause__, NotFoundError)


class AmbiguousNameError(JoplinError):
    """A name did not resolve to exactly one item."""

    def __init__(self, name: str, item_type: str, matches: int):
        if matches == 0:
            message = f"Could not find {item_type} called '{name}'"
        else:
            message = f"'{name}' matches {matches} {item_type} items, expected exactly one"
        super().__init__(message)
        self.name = name
        self.item_type = item_type
        self.matches = matches


class DiscoveryError(JoplinError):
    """No port in the candidate range answered the liveness probe."""

    def __init__(self, last_error: Optional[Exception] = None):
        message = f"Joplin clipper server not found on ports {MIN_PORT}-{MAX_PORT}"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.last_error = last_error


class PairingRejectedError(JoplinError):
    """The authorization request was rejected inside Joplin."""

    def __init__(self) -> None:
        super().__init__("Authorization request rejected in Joplin")


class PairingTimeoutError(JoplinError):
    """Nobody answered the authorization request in time."""

    def __init__(self, attempts: int):
        super().__init__(f"Could not get an answer to the authorization request after {attempts} attempts")
        self.attempts = attempts


class ConfigError(Exception):
    """The configuration file cannot be read or written."""


def cli_error(message: str) -> None:
    """Raise a Click-friendly error."""
    raise click.ClickException(message)


# Records


R = TypeVar("R", bound="Record")


class Record(BaseModel):
    """A Data API item. Unknown keys are ignored and nulls keep the default."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @classmethod
    def from_dict(cls: Type[R], data: Dict[str, Any]) -> R:
        return cls.model_validate(data)

    def to_dict(self, columns: Sequence[str]) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in columns}


class Tag(Record):
    id: str = ""
    parent_id: str = ""
    title: str = ""
    created_time: int = 0
    updated_time: int = 0
    user_created_time: int = 0
    user_updated_time: int = 0
    encryption_cipher_text: str = ""
    encryption_applied: int = 0
    is_shared: int = 0
    type_: int = 0


class Note(Record):
    id: str = ""
    parent_id: str = ""
    title: str = ""
    body: str = ""
    created_time: int = 0
    updated_time: int = 0
    is_conflict: int = 0
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0
    author: str = ""
    source_url: str = ""
    is_todo: int = 0
    todo_due: int = 0
    todo_completed: int = 0
    source: str = ""
    source_application: str = ""
    application_data: str = ""
    order: float = 0.0
    user_created_time: int = 0
    user_updated_time: int = 0
    encryption_cipher_text: str = ""
    encryption_applied: int = 0
    markup_language: int = 0
    is_shared: int = 0
    share_id: str = ""
    conflict_original_id: str = ""
    master_key_id: str = ""
    body_html: str = ""
    base_url: str = ""
    image_data_url: str = ""
    crop_rect: str = ""
    type_: int = 0


class Notebook(Record):
    id: str = ""
    parent_id: str = ""
    title: str = ""
    created_time: int = 0
    updated_time: int = 0
    user_created_time: int = 0
    user_updated_time: int = 0
    encryption_cipher_text: str = ""
    encryption_applied: int = 0
    encryption_blob_encrypted: int = 0
    is_shared: int = 0
    share_id: str = ""
    master_key_id: str = ""
    icon: str = ""


class Resource(Record):
    id: str = ""
    title: str = ""
    mime: str = ""
    filename: str = ""
    created_time: int = 0
    updated_time: int = 0
    user_created_time: int = 0
    user_updated_time: int = 0
    file_extension: str = ""
    encryption_cipher_text: str = ""
    encryption_applied: int = 0
    encryption_blob_encrypted: int = 0
    size: int = 0
    is_shared: int = 0
    share_id: str = ""
    master_key_id: str = ""


class SearchItem(Record):
    id: str = ""
    parent_id: str = ""
    title: str = ""


class NoteFormat(enum.Enum):
    MARKDOWN = "markdown"
    HTML = "html"

    @property
    def body_field(self) -> str:
        """Payload key the note body is stored under."""
        return "body_html" if self is NoteFormat.HTML else "body"


# Transport


def new_session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    return session


def base_url_for(port: int) -> str:
    return f"http://localhost:{port}"


def dump_response(resp: requests.Response) -> str:
    headers = "\n".join(f"{key}: {value}" for key, value in resp.headers.items())
    return f"HTTP {resp.status_code} {resp.reason or ''}\n{headers}\n\n{resp.text}"


def decode_body(resp: requests.Response, method: str, url: str) -> Any:
    if not resp.content:
        return {}
    content_type = resp.headers.get("Content-Type", "")
    if "application/json" in content_type or resp.text.startswith(("{", "[")):
        try:
            return resp.json()
        except ValueError as exc:
            raise UnexpectedResponseError(method, url, dump_response(resp)) from exc
    return resp.text


def classify_response(resp: requests.Response, method: str, url: str) -> Any:
    """Return the decoded body of a 2xx response or raise the matching error.

    ``url`` is the address without its query string so that tokens never end
    up in error messages.
    """
    status = resp.status_code
    if 200 <= status < 300:
        return decode_body(resp, method, url)
    if status == 404:
        raise NotFoundError(status, method, url, (resp.text or "").strip())
    if status >= 400:
        raise ApiError(status, method, url, (resp.text or "").strip())
    raise UnexpectedResponseError(method, url, dump_response(resp))


def send(
    session: requests.Session,
    method: str,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    timeout: float = REQUEST_TIMEOUT,
) -> Any:
    resp = session.request(method, url, params=params, json=json_body, timeout=timeout)
    logger.debug("%s %s -> %s", method, url, resp.status_code)
    return classify_response(resp, method, url)


# Discovery and pairing


def discover_port(
    session: requests.Session,
    ports: Iterable[int] = JOPLIN_PORTS,
    timeout: float = REQUEST_TIMEOUT,
) -> int:
    """Return the first port, in ascending order, whose /ping succeeds."""
    last_error: Optional[Exception] = None
    for port in sorted(ports):
        logger.debug("Probing port %d", port)
        try:
            send(session, "GET", f"{base_url_for(port)}/ping", timeout=timeout)
        except requests.RequestException as exc:
            last_error = exc
            continue
        except JoplinError as exc:
            logger.debug("Port %d is not usable: %s", port, exc)
            continue
        logger.debug("Joplin clipper server found on port %d", port)
        return port
    raise DiscoveryError(last_error) from last_error


def request_auth_token(session: requests.Session, port: int, timeout: float = REQUEST_TIMEOUT) -> str:
    url = f"{base_url_for(port)}/auth"
    data = send(session, "POST", url, timeout=timeout)
    auth_token = data.get("auth_token") if isinstance(data, dict) else None
    if not auth_token:
        raise UnexpectedResponseError("POST", url, f"no auth_token in {data!r}")
    return auth_token


def wait_for_api_token(
    session: requests.Session,
    port: int,
    auth_token: str,
    retries: int = API_TOKEN_RETRIES,
    interval: float = POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    timeout: float = REQUEST_TIMEOUT,
) -> str:
    """Poll /auth/check until the user accepts or rejects the request.

    Gives up with PairingTimeoutError on the ``retries``-th "waiting" answer.
    """
    url = f"{base_url_for(port)}/auth/check"
    waiting = 0
    while True:
        data = send(session, "GET", url, params={"auth_token": auth_token}, timeout=timeout)
        status = data.get("status") if isinstance(data, dict) else None
        logger.debug("Authorization status: %s", status)
        if status == "accepted":
            token = data.get("token")
            if not token:
                raise UnexpectedResponseError("GET", url, f"accepted without a token: {data!r}")
            return token
        if status == "rejected":
            raise PairingRejectedError()
        if status != "waiting":
            raise UnexpectedResponseError("GET", url, f"unknown authorization status in {data!r}")
        waiting += 1
        if waiting >= retries:
            raise PairingTimeoutError(waiting)
        sleep(interval)


def connect(
    token: Optional[str] = None,
    session: Optional[requests.Session] = None,
    ports: Iterable[int] = JOPLIN_PORTS,
    timeout: float = REQUEST_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> "JoplinClient":
    """Find the running Joplin instance and return a client for it.

    Without a token the pairing handshake is run; the freshly approved token
    is available as ``client.token`` for the caller to persist.
    """
    session = session or new_session()
    port = discover_port(session, ports, timeout=timeout)
    if not token:
        auth_token = request_auth_token(session, port, timeout=timeout)
        logger.debug("Waiting for the authorization request to be accepted in Joplin")
        token = wait_for_api_token(session, port, auth_token, sleep=sleep, timeout=timeout)
    return JoplinClient(port, token, session=session, timeout=timeout)


# Client


class JoplinClient:
    """Joplin Data API client bound to a discovered port and token."""

    def __init__(
        self,
        port: int,
        token: str,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self._port = port
        self._token = token
        self._session = session or new_session()
        self._timeout = timeout

    @property
    def port(self) -> int:
        return self._port

    @property
    def token(self) -> str:
        return self._token

    @property
    def base_url(self) -> str:
        return base_url_for(self._port)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        query = dict(params or {})
        query["token"] = self._token
        return send(
            self._session,
            method,
            f"{self.base_url}{path}",
            params=query,
            json_body=json_body,
            timeout=self._timeout,
        )

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("GET", path, params=params)

    def _post(self, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("POST", path, json_body=json_body)

    def _put(self, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        return self._request("PUT", path, json_body=json_body)

    def _delete(self, path: str) -> Any:
        return self._request("DELETE", path)

    def _get_item(self, path: str, model: Type[R], fields: Optional[str]) -> R:
        data = self._get(path, {"fields": fields or DEFAULT_FIELDS})
        if not isinstance(data, dict):
            raise UnexpectedResponseError("GET", f"{self.base_url}{path}", f"expected an object, got {data!r}")
        return model.from_dict(data)

    def _collect_paginated(
        self,
        path: str,
        fields: Optional[str] = DEFAULT_FIELDS,
        order_by: Optional[str] = None,
        order_dir: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        page_params = dict(params or {})
        if fields:
            page_params["fields"] = fields
        if order_by:
            page_params["order_by"] = order_by
        if order_dir:
            page_params["order_dir"] = order_dir.upper()
        results: List[Dict[str, Any]] = []
        page = 1
        while True:
            page_params["page"] = page
            try:
                data = self._get(path, page_params)
                if not isinstance(data, dict) or "items" not in data:
                    raise UnexpectedResponseError(
                        "GET", f"{self.base_url}{path}", f"expected a paged collection, got {data!r}"
                    )
            except (requests.RequestException, JoplinError) as exc:
                raise PaginationError(path, page, results) from exc
            logger.debug("%s page %d: %d items", path, page, len(data["items"]))
            results.extend(data["items"])
            if not data.get("has_more"):
                return results
            page += 1

    def ping(self) -> bool:
        try:
            send(self._session, "GET", f"{self.base_url}/ping", timeout=self._timeout)
        except (requests.RequestException, JoplinError) as exc:
            logger.debug("Ping failed: %s", exc)
            return False
        return True

    def tags(
        self, fields: Optional[str] = None, order_by: Optional[str] = None, order_dir: Optional[str] = None
    ) -> List[Tag]:
        items = self._collect_paginated("/tags", fields or DEFAULT_FIELDS, order_by, order_dir)
        return [Tag.from_dict(item) for item in items]

    def tag(self, tag_id: str, fields: Optional[str] = None) -> Tag:
        return self._get_item(f"/tags/{tag_id}", Tag, fields)

    def tag_notes(
        self,
        tag_id: str,
        fields: Optional[str] = None,
        order_by: Optional[str] = None,
        order_dir: Optional[str] = None,
    ) -> List[Note]:
        items = self._collect_paginated(f"/tags/{tag_id}/notes", fields or DEFAULT_FIELDS, order_by, order_dir)
        return [Note.from_dict(item) for item in items]

    def delete_tag(self, tag_id: str) -> None:
        self._delete(f"/tags/{tag_id}")

    def tag_note(self, tag_id: str, note_id: str) -> None:
        self._post(f"/tags/{tag_id}/notes", json_body={"id": note_id})

    def untag_note(self, tag_id: str, note_id: str) -> None:
        self._delete(f"/tags/{tag_id}/notes/{note_id}")

    def notes(
        self, fields: Optional[str] = None, order_by: Optional[str] = None, order_dir: Optional[str] = None
    ) -> List[Note]:
        items = self._collect_paginated("/notes", fields or DEFAULT_FIELDS, order_by, order_dir)
        return [Note.from_dict(item) for item in items]

    def note(self, note_id: str, fields: Optional[str] = None) -> Note:
        return self._get_item(f"/notes/{note_id}", Note, fields)

    def move_note(self, note_id: str, notebook_id: str) -> None:
        self._put(f"/notes/{note_id}", json_body={"parent_id": notebook_id})

    def folders(
        self, fields: Optional[str] = None, order_by: Optional[str] = None, order_dir: Optional[str] = None
    ) -> List[Notebook]:
        items = self._collect_paginated("/folders", fields or DEFAULT_FIELDS, order_by, order_dir)
        return [Notebook.from_dict(item) for item in items]

    def folder(self, folder_id: str, fields: Optional[str] = None) -> Notebook:
        return self._get_item(f"/folders/{folder_id}", Notebook, fields)

    def folder_notes(
        self,
        folder_id: str,
        fields: Optional[str] = None,
        order_by: Optional[str] = None,
        order_dir: Optional[str] = None,
    ) -> List[Note]:
        items = self._collect_paginated(
            f"/folders/{folder_id}/notes", fields or DEFAULT_FIELDS, order_by, order_dir
        )
        return [Note.from_dict(item) for item in items]

    def resources(
        self, fields: Optional[str] = None, order_by: Optional[str] = None, order_dir: Optional[str] = None
    ) -> List[Resource]:
        items = self._collect_paginated("/resources", fields or DEFAULT_RESOURCE_FIELDS, order_by, order_dir)
        return [Resource.from_dict(item) for item in items]

    def resource(self, resource_id: str, fields: Optional[str] = None) -> Resource:
        return self._get_item(f"/resources/{resource_id}", Resource, fields or DEFAULT_RESOURCE_FIELDS)

    def search(self, query: str, item_type: Optional[str] = None, fields: Optional[str] = None) -> List[SearchItem]:
        params: Dict[str, Any] = {"query": query}
        if item_type:
            params["type"] = item_type
        items = self._collect_paginated("/search", fields or DEFAULT_FIELDS, params=params)
        return [SearchItem.from_dict(item) for item in items]

    def resolve_id(self, name: str, item_type: str) -> str:
        """Return the ID of the single item of ``item_type`` matching ``name``."""
        matches = self.search(name, item_type)
        if len(matches) != 1:
            raise AmbiguousNameError(name, item_type, len(matches))
        return matches[0].id

    def create_note(
        self,
        title: str,
        body: str,
        notebook: str,
        tags: Sequence[str] = (),
        note_format: NoteFormat = NoteFormat.MARKDOWN,
    ) -> Note:
        """Create a note, attach ``tags`` and file it into ``notebook``.

        Notebook and tags are given by name and must each match exactly one
        item. A failure after the note was created leaves it in place.
        """
        notebook_id = self.resolve_id(notebook, "folder")
        data = self._post("/notes", json_body={"title": title, note_format.body_field: body})
        if not isinstance(data, dict) or not data.get("id"):
            raise UnexpectedResponseError("POST", f"{self.base_url}/notes", f"expected the created note, got {data!r}")
        note = Note.from_dict(data)
        logger.debug("Created note %s", note.id)
        for tag_name in tags:
            self.tag_note(self.resolve_id(tag_name, "tag"), note.id)
        self.move_note(note.id, notebook_id)
        note.parent_id = notebook_id
        return note


# Configuration


def load_config(path: Path) -> Dict[str, Any]:
    """Read the YAML config file; a missing file is an empty config."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise ConfigError(f"Unable to read config file '{path}': {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file '{path}': {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping.")
    return data


def save_token(path: Path, token: str) -> None:
    """Store ``token`` as ``api_token`` and make the file owner-only."""
    config = load_config(path)
    config["api_token"] = token
    text = yaml.safe_dump(config, sort_keys=False)
    try:
        # Truncate and restrict an existing file before the token goes in.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            os.chmod(path, 0o600)
            fh.write(text)
    except OSError as exc:
        raise ConfigError(f"Unable to write config file '{path}': {exc}") from exc


# Presentation


class Column(NamedTuple):
    label: str
    accessor: Callable[[Any], Any]
    fmt: str


def columns_of(*specs: Tuple[str, str, str]) -> Dict[str, Column]:
    return {name: Column(label, attrgetter(name), fmt) for name, label, fmt in specs}


ID = ("id", "ID", "%-32s")
PARENT_ID = ("parent_id", "Parent ID", "%-32s")
TITLE = ("title", "Title", "%-60.60s")
CREATED_TIME = ("created_time", "Created Time", "%16d")
UPDATED_TIME = ("updated_time", "Updated Time", "%16d")
USER_CREATED_TIME = ("user_created_time", "User Created Time", "%-16d")
USER_UPDATED_TIME = ("user_updated_time", "User Updated Time", "%-16d")
ENCRYPTION_CIPHER_TEXT = ("encryption_cipher_text", "Encryption Cipher Text", "%-32.32s")
ENCRYPTION_APPLIED = ("encryption_applied", "Encryption Applied", "%-16d")
ENCRYPTION_BLOB_ENCRYPTED = ("encryption_blob_encrypted", "Encryption Blob Encrypted", "%-16d")
IS_SHARED = ("is_shared", "Is Shared", "%-16d")
SHARE_ID = ("share_id", "Share ID", "%-32.32s")
MASTER_KEY_ID = ("master_key_id", "Master Key ID", "%-32.32s")

TAG_COLUMNS = columns_of(
    ID,
    PARENT_ID,
    TITLE,
    CREATED_TIME,
    UPDATED_TIME,
    USER_CREATED_TIME,
    USER_UPDATED_TIME,
    ENCRYPTION_CIPHER_TEXT,
    ENCRYPTION_APPLIED,
    IS_SHARED,
)

NOTE_COLUMNS = columns_of(
    ID,
    PARENT_ID,
    TITLE,
    ("body", "Body", "%-60.60s"),
    CREATED_TIME,
    UPDATED_TIME,
    ("is_conflict", "Is Conflict", "%-16d"),
    ("latitude", "Latitude", "%-12.4f"),
    ("longitude", "Longitude", "%-12.4f"),
    ("altitude", "Altitude", "%-12.4f"),
    ("author", "Author", "%-32.32s"),
    ("source_url", "Source URL", "%-32.32s"),
    ("is_todo", "Is Todo", "%-16d"),
    ("todo_due", "Todo Due", "%-16d"),
    ("todo_completed", "Todo Completed", "%-16d"),
    ("source", "Source", "%-32.32s"),
    ("source_application", "Source Application", "%-32.32s"),
    ("application_data", "Application Data", "%-32.32s"),
    ("order", "Order", "%-16d"),
    USER_CREATED_TIME,
    USER_UPDATED_TIME,
    ENCRYPTION_CIPHER_TEXT,
    ENCRYPTION_APPLIED,
    ("markup_language", "Markup Language", "%-16d"),
    IS_SHARED,
    SHARE_ID,
    ("conflict_original_id", "Conflict Original ID", "%-32.32s"),
    MASTER_KEY_ID,
    ("body_html", "Body HTML", "%-32.32s"),
    ("base_url", "Base URL", "%-32.32s"),
    ("image_data_url", "Image Data URL", "%-32.32s"),
    ("crop_rect", "Crop Rect", "%-32.32s"),
)

NOTEBOOK_COLUMNS = columns_of(
    ID,
    PARENT_ID,
    TITLE,
    CREATED_TIME,
    UPDATED_TIME,
    USER_CREATED_TIME,
    USER_UPDATED_TIME,
    ENCRYPTION_CIPHER_TEXT,
    ENCRYPTION_APPLIED,
    ENCRYPTION_BLOB_ENCRYPTED,
    IS_SHARED,
    SHARE_ID,
    MASTER_KEY_ID,
    ("icon", "Icon", "%-32.32s"),
)

RESOURCE_COLUMNS = columns_of(
    ID,
    TITLE,
    ("mime", "Mime", "%-32.32s"),
    ("filename", "Filename", "%-32.32s"),
    CREATED_TIME,
    UPDATED_TIME,
    USER_CREATED_TIME,
    USER_UPDATED_TIME,
    ("file_extension", "File Extension", "%-32.32s"),
    ENCRYPTION_CIPHER_TEXT,
    ENCRYPTION_APPLIED,
    ENCRYPTION_BLOB_ENCRYPTED,
    ("size", "Size", "%-16d"),
    IS_SHARED,
    SHARE_ID,
    MASTER_KEY_ID,
)

SEARCH_COLUMNS = columns_of(ID, PARENT_ID, TITLE)


def parse_columns(fields: str, column_map: Dict[str, Column], kind: str) -> List[str]:
    """Split a --fields value and check every name against ``column_map``."""
    columns = [name.strip() for name in fields.split(",") if name.strip()]
    if not columns:
        raise click.UsageError("--fields needs at least one field name.")
    unknown = [name for name in columns if name not in column_map]
    if unknown:
        raise click.UsageError(
            f"Unknown {kind} field(s): {', '.join(unknown)}. Known fields: {', '.join(column_map)}"
        )
    return columns


def format_cell(column: Column, record: Any) -> str:
    value = column.accessor(record)
    if isinstance(value, str):
        value = " ".join(value.splitlines())
    return column.fmt % value


def format_table(
    headers: List[str],
    rows: Iterable[List[Any]],
    title: Optional[str] = None,
    show_header: bool = True,
) -> str:
    """Render a simple ASCII table."""
    col_widths = [len(h) for h in headers] if show_header else [0] * len(headers)
    str_rows: List[List[str]] = []
    for row in rows:
        str_row = ["" if v is None else str(v) for v in row]
        str_rows.append(str_row)
        for idx, val in enumerate(str_row):
            col_widths[idx] = max(col_widths[idx], len(val))
    fmt = "  ".join(f"{{:{w}}}" for w in col_widths)
    lines: List[str] = []
    if show_header:
        if title:
            lines.append(title)
        lines.append(fmt.format(*headers))
        lines.append("  ".join("-" * w for w in col_widths))
    lines.extend(fmt.format(*r) for r in str_rows)
    return "\n".join(line.rstrip() for line in lines)


def print_output(data: Any, fmt: str) -> None:
    if fmt == "json":
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
        return
    if fmt == "yaml":
        click.echo(yaml.safe_dump(data, sort_keys=False, allow_unicode=True).rstrip("\n"))
        return
    # text
    if isinstance(data, str):
        click.echo(data)
    else:
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))


def render_records(
    records: Sequence[Record],
    column_map: Dict[str, Column],
    columns: List[str],
    output_format: str,
    title: str,
    show_header: bool = True,
) -> None:
    if output_format != "text":
        print_output([record.to_dict(columns) for record in records], output_format)
        return
    headers = [column_map[name].label for name in columns]
    rows = [[format_cell(column_map[name], record) for name in columns] for record in records]
    click.echo(format_table(headers, rows, title=title, show_header=show_header))


def report_missing(item_id: str, kind: str) -> None:
    click.echo(f"{item_id:<32} <= ERROR: {kind} not found", err=True)


def fetch_by_ids(ids: Iterable[str], fetch: Callable[[str], R], kind: str) -> List[R]:
    """Fetch each ID in turn; missing IDs are reported and skipped."""
    records: List[R] = []
    for item_id in ids:
        try:
            records.append(fetch(item_id))
        except NotFoundError:
            report_missing(item_id, kind)
    return records


def find_duplicate_tags(tags: Iterable[Tag]) -> Dict[str, List[str]]:
    by_title: Dict[str, List[str]] = {}
    for tag in tags:
        by_title.setdefault(tag.title, []).append(tag.id)
    return {title: ids for title, ids in by_title.items() if len(ids) > 1}


def find_orphan_tags(client: JoplinClient, tags: Iterable[Tag]) -> List[Tag]:
    """Tags without notes. Tags whose notes cannot be listed are skipped."""
    orphans: List[Tag] = []
    for tag in tags:
        try:
            notes = client.tag_notes(tag.id, "id")
        except (requests.RequestException, JoplinError) as exc:
            logger.debug("Skipping tag %s: %s", tag.id, exc)
            continue
        if not notes:
            orphans.append(tag)
    return orphans


def read_text_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        cli_error(f"Unable to read file '{path}': {exc}")


def resolve_body_argument(body: str) -> str:
    """A body of the form ``@path`` is read from that file."""
    if body.startswith("@"):
        return read_text_file(body[1:])
    return body


# CLI plumbing


def configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logger.setLevel(level)


def open_client(ctx: click.Context) -> JoplinClient:
    """Return the session client, connecting (and pairing) on first use."""
    obj = ctx.obj
    client: Optional[JoplinClient] = obj.get("client")
    if client is not None:
        return client
    config_path = Path(obj["config_path"]).expanduser()
    token = obj.get("token") or load_config(config_path).get("api_token")
    if not token:
        click.echo("No API token configured. Accept the authorization request in Joplin to continue.", err=True)
    client = connect(token)
    if client.token != token:
        try:
            save_token(config_path, client.token)
        except ConfigError as exc:
            click.echo(f"Warning: {exc}", err=True)
            click.echo(f"Set JOPLIN_API_TOKEN={client.token} or pass --token to reuse this pairing.", err=True)
        else:
            click.echo(f"API token saved to {config_path}", err=True)
    obj["client"] = client
    return client


def with_client(handler):
    """Click helper to inject the client and handle API errors."""

    @wraps(handler)
    @click.pass_context
    def wrapper(ctx: click.Context, *args: Any, **kwargs: Any) -> Any:
        local_format = kwargs.pop("local_format", None)
        output_format: str = local_format or ctx.obj["format"]
        try:
            client = open_client(ctx)
            return handler(client, output_format, *args, **kwargs)
        except (JoplinError, ConfigError) as exc:
            raise click.ClickException(str(exc)) from exc
        except requests.RequestException as exc:
            raise click.ClickException(f"Request error: {exc}") from exc
        except ValidationError as exc:
            raise click.ClickException(f"Unexpected item data from Joplin: {exc}") from exc

    return wrapper


def format_option(func):
    """Allow per-command --format overrides placed after the subcommand."""

    return click.option(
        "--format",
        "local_format",
        type=click.Choice(OUTPUT_FORMATS),
        help="Override output format for this command.",
    )(func)


def listing_options(func):
    """Options shared by the list commands."""
    for option in reversed(
        [
            click.option("--no-header", is_flag=True, help="Do not print header."),
            click.option("--fields", help="Show only the specified fields (comma separated)."),
            click.option("--order-by", help="Order by specified field."),
            click.option("--order-dir", help="Order by specified direction: ASC or DESC."),
        ]
    ):
        func = option(func)
    return func


# Handlers


def handle_status(client: JoplinClient, output_format: str) -> None:
    if not client.ping():
        cli_error(f"Unable to reach {client.base_url}. Is the clipper server running?")
    if output_format == "text":
        click.echo(f"Connected to {client.base_url}")
    else:
        print_output({"base_url": client.base_url, "port": client.port}, output_format)


def handle_list_tags(
    client: JoplinClient,
    output_format: str,
    ids: Sequence[str],
    fields: Optional[str],
    no_header: bool,
    order_by: Optional[str],
    order_dir: Optional[str],
    duplicates_only: bool,
    orphans_only: bool,
) -> None:
    if duplicates_only and orphans_only:
        cli_error("Use either --duplicates-only or --orphans-only, not both.")
    columns = parse_columns(fields or DEFAULT_FIELDS, TAG_COLUMNS, "tag")
    field_list = ",".join(columns)

    if ids:
        tags = fetch_by_ids(ids, lambda tag_id: client.tag(tag_id, field_list), "tag")
    elif duplicates_only:
        duplicates = find_duplicate_tags(client.tags("id,title", order_by, order_dir))
        if output_format != "text":
            print_output(duplicates, output_format)
            return
        if not no_header:
            click.echo("Duplicate tags:")
        for title, tag_ids in duplicates.items():
            click.echo(f"{title}: {' '.join(tag_ids)}")
        if not duplicates:
            click.echo("No duplicates found.")
        return
    else:
        tags = client.tags(field_list, order_by, order_dir)
        if orphans_only:
            tags = find_orphan_tags(client, tags)
            if not tags and output_format == "text":
                click.echo("No orphans found.")
                return

    render_records(tags, TAG_COLUMNS, columns, output_format, "Tags", not no_header)


def handle_list_notes(
    client: JoplinClient,
    output_format: str,
    ids: Sequence[str],
    by: str,
    notebook_id: Optional[str],
    fields: Optional[str],
    no_header: bool,
    order_by: Optional[str],
    order_dir: Optional[str],
) -> None:
    columns = parse_columns(fields or DEFAULT_FIELDS, NOTE_COLUMNS, "note")
    field_list = ",".join(columns)

    notes: List[Note] = []
    if not ids:
        if notebook_id:
            notes = client.folder_notes(notebook_id, field_list, order_by, order_dir)
        else:
            notes = client.notes(field_list, order_by, order_dir)
    elif by == "tag":
        for tag_id in ids:
            try:
                notes.extend(client.tag_notes(tag_id, field_list, order_by, order_dir))
            except PaginationError as exc:
                if not exc.not_found:
                    raise
                report_missing(tag_id, "tag")
    else:
        notes = fetch_by_ids(ids, lambda note_id: client.note(note_id, field_list), "note")

    render_records(notes, NOTE_COLUMNS, columns, output_format, "Notes", not no_header)


def handle_list_notebooks(
    client: JoplinClient,
    output_format: str,
    ids: Sequence[str],
    fields: Optional[str],
    no_header: bool,
    order_by: Optional[str],
    order_dir: Optional[str],
) -> None:
    columns = parse_columns(fields or DEFAULT_FIELDS, NOTEBOOK_COLUMNS, "notebook")
    field_list = ",".join(columns)
    if ids:
        notebooks = fetch_by_ids(ids, lambda folder_id: client.folder(folder_id, field_list), "notebook")
    else:
        notebooks = client.folders(field_list, order_by, order_dir)
    render_records(notebooks, NOTEBOOK_COLUMNS, columns, output_format, "Notebooks", not no_header)


def handle_list_resources(
    client: JoplinClient,
    output_format: str,
    ids: Sequence[str],
    fields: Optional[str],
    no_header: bool,
    order_by: Optional[str],
    order_dir: Optional[str],
) -> None:
    columns = parse_columns(fields or DEFAULT_RESOURCE_FIELDS, RESOURCE_COLUMNS, "resource")
    field_list = ",".join(columns)
    if ids:
        resources = fetch_by_ids(ids, lambda resource_id: client.resource(resource_id, field_list), "resource")
    else:
        resources = client.resources(field_list, order_by, order_dir)
    render_records(resources, RESOURCE_COLUMNS, columns, output_format, "Resources", not no_header)


def handle_delete_tags(client: JoplinClient, output_format: str, ids: Sequence[str]) -> None:
    deleted: List[str] = []
    missing: List[str] = []
    for tag_id in ids:
        try:
            client.delete_tag(tag_id)
        except NotFoundError:
            missing.append(tag_id)
            if output_format == "text":
                click.echo(f"Could not find tag with ID '{tag_id}'", err=True)
            continue
        deleted.append(tag_id)
        if output_format == "text":
            click.echo(f"Tag with ID '{tag_id}' deleted")
    if output_format != "text":
        print_output({"deleted": deleted, "missing": missing}, output_format)


def handle_untag_note(client: JoplinClient, output_format: str, tag_id: str, note_id: str) -> None:
    try:
        client.untag_note(tag_id, note_id)
    except NotFoundError:
        cli_error(f"Could not find tag with ID '{tag_id}' on note '{note_id}'")
    if output_format == "text":
        click.echo(f"Tag with ID '{tag_id}' removed from note '{note_id}'")
    else:
        print_output({"untagged": note_id, "tag_id": tag_id}, output_format)


def handle_search(
    client: JoplinClient,
    output_format: str,
    query: str,
    item_type: Optional[str],
    fields: Optional[str],
    no_header: bool,
) -> None:
    columns = parse_columns(fields or DEFAULT_FIELDS, SEARCH_COLUMNS, "search")
    items = client.search(query, item_type, ",".join(columns))
    render_records(items, SEARCH_COLUMNS, columns, output_format, "Search", not no_header)


def handle_create_note(
    client: JoplinClient,
    output_format: str,
    title: str,
    body: str,
    notebook: str,
    tags: Sequence[str],
    markup: str,
) -> None:
    note = client.create_note(
        title,
        resolve_body_argument(body),
        notebook,
        tags=tags,
        note_format=NoteFormat(markup.lower()),
    )
    if output_format == "text":
        click.echo(f"Note '{title}' created with ID {note.id}")
    else:
        print_output(note.to_dict(["id", "parent_id", "title"]), output_format)


# Commands


@click.group()
@click.option(
    "--token",
    envvar="JOPLIN_API_TOKEN",
    help="Joplin API token. Without one the token from the config file is used, or a new one is requested.",
)
@click.option(
    "--config",
    "config_path",
    envvar="JOPTOOL_CONFIG",
    default=DEFAULT_CONFIG,
    show_default=True,
    type=click.Path(dir_okay=False),
    help="Config file holding the API token.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(OUTPUT_FORMATS),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--debug", is_flag=True, help="Enable debug output.")
@click.pass_context
def cli(ctx: click.Context, token: Optional[str], config_path: str, output_format: str, debug: bool) -> None:
    """CLI for the Joplin Data API."""

    configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj.update(token=token, config_path=config_path, format=output_format)


@cli.command("status")
@format_option
@with_client
def status(client: JoplinClient, output_format: str) -> None:
    """Show which Joplin instance is in use."""
    handle_status(client, output_format)


@cli.group("list")
def list_group() -> None:
    """Joplin list commands."""


@list_group.command("tags")
@click.argument("ids", nargs=-1)
@listing_options
@click.option("--duplicates-only", is_flag=True, help="List only duplicate tags.")
@click.option("--orphans-only", is_flag=True, help="List only tags without notes.")
@format_option
@with_client
def list_tags(
    client: JoplinClient,
    output_format: str,
    ids: Tuple[str, ...],
    no_header: bool,
    fields: Optional[str],
    order_by: Optional[str],
    order_dir: Optional[str],
    duplicates_only: bool,
    orphans_only: bool,
) -> None:
    """List tags, all of them or the given IDs."""
    handle_list_tags(
        client, output_format, ids, fields, no_header, order_by, order_dir, duplicates_only, orphans_only
    )


@list_group.command("notes")
@click.argument("ids", nargs=-1)
@listing_options
@click.option(
    "--by",
    type=click.Choice(["id", "tag"], case_sensitive=False),
    default="id",
    show_default=True,
    help="Treat IDs as note IDs or tag IDs.",
)
@click.option("--in", "notebook_id", help="Only notes in the specified notebook ID.")
@format_option
@with_client
def list_notes(
    client: JoplinClient,
    output_format: str,
    ids: Tuple[str, ...],
    no_header: bool,
    fields: Optional[str],
    order_by: Optional[str],
    order_dir: Optional[str],
    by: str,
    notebook_id: Optional[str],
) -> None:
    """List notes, all of them, those in a notebook, or the given IDs."""
    handle_list_notes(
        client, output_format, ids, by.lower(), notebook_id, fields, no_header, order_by, order_dir
    )


@list_group.command("notebooks")
@click.argument("ids", nargs=-1)
@listing_options
@format_option
@with_client
def list_notebooks(
    client: JoplinClient,
    output_format: str,
    ids: Tuple[str, ...],
    no_header: bool,
    fields: Optional[str],
    order_by: Optional[str],
    order_dir: Optional[str],
) -> None:
    """List notebooks, all of them or the given IDs."""
    handle_list_notebooks(client, output_format, ids, fields, no_header, order_by, order_dir)


@list_group.command("resources")
@click.argument("ids", nargs=-1)
@listing_options
@format_option
@with_client
def list_resources(
    client: JoplinClient,
    output_format: str,
    ids: Tuple[str, ...],
    no_header: bool,
    fields: Optional[str],
    order_by: Optional[str],
    order_dir: Optional[str],
) -> None:
    """List resources, all of them or the given IDs."""
    handle_list_resources(client, output_format, ids, fields, no_header, order_by, order_dir)


@cli.group("delete")
def delete_group() -> None:
    """Joplin delete commands."""


@delete_group.command("tags")
@click.argument("ids", nargs=-1, required=True)
@format_option
@with_client
def delete_tags(client: JoplinClient, output_format: str, ids: Tuple[str, ...]) -> None:
    """Delete tags with the specified IDs."""
    handle_delete_tags(client, output_format, ids)


@delete_group.command("tag")
@click.argument("tag_id")
@click.option("--from", "note_id", required=True, help="ID of the note to remove the tag from.")
@format_option
@with_client
def delete_tag_from_note(client: JoplinClient, output_format: str, tag_id: str, note_id: str) -> None:
    """Remove a tag from a note."""
    handle_untag_note(client, output_format, tag_id, note_id)


@cli.command()
@click.argument("query")
@click.option("--type", "item_type", type=click.Choice(ITEM_TYPES), help="Search for specified type.")
@click.option("--fields", help="Show only the specified fields (comma separated).")
@click.option("--no-header", is_flag=True, help="Do not print header.")
@format_option
@with_client
def search(
    client: JoplinClient,
    output_format: str,
    query: str,
    item_type: Optional[str],
    fields: Optional[str],
    no_header: bool,
) -> None:
    """Search notes, notebooks, tags and more (see https://joplinapp.org/help/#searching)."""
    handle_search(client, output_format, query, item_type, fields, no_header)


@cli.group("create")
def create_group() -> None:
    """Joplin create commands."""


@create_group.command("note")
@click.argument("title")
@click.argument("body")
@click.argument("notebook")
@click.argument("tags", nargs=-1)
@click.option(
    "--markup",
    type=click.Choice([f.value for f in NoteFormat], case_sensitive=False),
    default=NoteFormat.MARKDOWN.value,
    show_default=True,
    help="Format of the note body.",
)
@format_option
@with_client
def create_note(
    client: JoplinClient,
    output_format: str,
    title: str,
    body: str,
    notebook: str,
    tags: Tuple[str, ...],
    markup: str,
) -> None:
    """Create a note in NOTEBOOK with optional TAGS.

    BODY prefixed with '@' is read from the given file.
    """
    handle_create_note(client, output_format, title, body, notebook, tags, markup)


def main() -> None:
    """Console entry hook for setuptools."""
    cli()


if __name__ == "__main__":
    main()
