#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.32.0",
#     "tabulate>=0.9.0",
#     "pyyaml>=6.0.1",
# ]
# ///
"""Pingen CLI.

Authenticates with the Pingen identity service (OAuth2 client credentials) and
drives the Pingen JSON:API to list organisations and list, fetch, create and
send letters.

Usage examples:
    ./scripts/pingen_cli.py auth token --save --save-credentials
    ./scripts/pingen_cli.py org list --limit 10
    ./scripts/pingen_cli.py --org <uuid> letters create --file invoice.pdf --address-position left
    ./scripts/pingen_cli.py --org <uuid> --dry-run letters send <id> --delivery-product cheap \\
        --print-mode simplex --print-spectrum grayscale
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import requests
from tabulate import tabulate

# Prevent BrokenPipeError when piping output
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_DFL)

VERSION = "0.1.0"
USER_AGENT = f"pingen-cli/{VERSION}"
DEFAULT_SCOPE = "letter batch webhook organisation_read"
CONFIG_ENV_VAR = "PINGEN_CONFIG_PATH"
DEFAULT_TIMEOUT = 30
# A cached token is refreshed this many seconds before it expires.
TOKEN_EXPIRY_SKEW = 30
UPLOAD_MIN_TIMEOUT = 60
REQUEST_ID_HEADER = "X-Request-Id"
JSON_API_TYPE = "application/vnd.api+json"

ENVIRONMENTS = ("staging", "production")
DEFAULT_ENVIRONMENT = "staging"
API_BASES = {
    "staging": "https://api-staging.pingen.com",
    "production": "https://api.pingen.com",
}
IDENTITY_BASES = {
    "staging": "https://identity-staging.pingen.com",
    "production": "https://identity.pingen.com",
}

ENV_VARS = {
    "env": "PINGEN_ENV",
    "api_base": "PINGEN_API_BASE",
    "identity_base": "PINGEN_IDENTITY_BASE",
    "organisation_id": "PINGEN_ORG_ID",
    "access_token": "PINGEN_ACCESS_TOKEN",
    "client_id": "PINGEN_CLIENT_ID",
    "client_secret": "PINGEN_CLIENT_SECRET",
}
CONFIG_KEYS = tuple(ENV_VARS)

ADDRESS_POSITIONS = ("left", "right")
DELIVERY_PRODUCTS = ("fast", "cheap", "bulk", "premium", "registered")
PRINT_MODES = ("simplex", "duplex")
PRINT_SPECTRUMS = ("color", "grayscale")
DEFAULT_FILE_NAME = "document.pdf"

ORGANISATION_FIELDS = ["id", "name", "status"]
LETTER_FIELDS = ["id", "status", "file_original_name"]


class CliError(Exception):
    exit_code = 1


class ValidationError(CliError):
    """Bad local input, always detected before any network call."""

    exit_code = 2


class ConfigurationError(CliError):
    exit_code = 2


class ApiError(CliError):
    def __init__(self, message: str, status: int = 0, request_id: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.request_id = request_id

    def __str__(self) -> str:
        if self.request_id:
            return f"{self.message} (HTTP {self.status}, request_id={self.request_id})"
        return f"{self.message} (HTTP {self.status})"


class ProtocolError(ApiError):
    """A response that cannot be used even though the call itself succeeded."""


@dataclass
class Settings:
    env: str = ""
    api_base: str = ""
    identity_base: str = ""
    organisation_id: str = ""
    access_token: str = ""
    access_token_expires_at: int = 0  # epoch seconds, 0 = unknown
    client_id: str = ""
    client_secret: str = ""

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Settings":
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = payload.get(f.name)
            if raw is None:
                continue
            if f.name == "access_token_expires_at":
                try:
                    values[f.name] = int(raw)
                except (TypeError, ValueError):
                    raise ConfigurationError(f"invalid {f.name} in config: {raw!r}") from None
            else:
                values[f.name] = str(raw)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AppContext:
    settings: Settings
    config_path: Path
    config_loaded: bool = False
    timeout: float = DEFAULT_TIMEOUT
    output_format: str = "plain"
    dry_run: bool = False
    quiet: bool = False
    verbose: bool = False
    debug: bool = False


# Config store


def config_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    environ = os.environ if environ is None else environ
    override = environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    xdg = environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(xdg) / "pingen" / "config.json"


def read_local_text(path: Path, error: type = ValidationError) -> str:
    """Read a local UTF-8 file; undecodable bytes become ``error``."""
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise error(f"{path} is not valid UTF-8: {exc}") from exc


def load_config(path: Path) -> Tuple[Settings, bool]:
    """Return the persisted settings and whether the file existed."""
    try:
        raw = read_local_text(path, ConfigurationError)
    except FileNotFoundError:
        return Settings(), False
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"failed to load config {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"failed to load config {path}: expected a JSON object")
    return Settings.from_dict(payload), True


def save_config(path: Path, settings: Settings) -> None:
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    encoded = json.dumps(settings.to_dict(), indent=2) + "\n"
    fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(encoded)


# Config resolver


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    return Settings(**{name: environ.get(var, "") for name, var in ENV_VARS.items()})


def settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        env=args.env or "",
        api_base=args.api_base or "",
        identity_base=args.identity_base or "",
        organisation_id=args.org or "",
        access_token=args.access_token or "",
        client_id=args.client_id or "",
        client_secret=args.client_secret or "",
    )


def merge_settings(base: Settings, override: Settings) -> Settings:
    """Overlay every non-empty (or non-zero) field of ``override`` onto ``base``."""
    changes = {f.name: getattr(override, f.name) for f in fields(Settings) if getattr(override, f.name)}
    return replace(base, **changes)


def apply_default_bases(settings: Settings) -> Settings:
    return replace(
        settings,
        api_base=settings.api_base or API_BASES[settings.env],
        identity_base=settings.identity_base or IDENTITY_BASES[settings.env],
    )


def resolve_settings(
    file_settings: Settings,
    env_settings: Settings,
    cli_settings: Settings,
    *,
    client_secret_file: Optional[str] = None,
) -> Settings:
    settings = merge_settings(merge_settings(file_settings, env_settings), cli_settings)

    # Secret files beat every other source so secrets stay out of argv.
    if client_secret_file:
        secret = read_local_text(Path(client_secret_file), ConfigurationError).strip()
        settings = replace(settings, client_secret=secret)

    if not settings.env:
        settings = replace(settings, env=DEFAULT_ENVIRONMENT)
    if settings.env not in ENVIRONMENTS:
        raise ValidationError(f"invalid env {settings.env!r} (use staging or production)")
    return apply_default_bases(settings)


# API client


def add_query(url: str, params: Mapping[str, str]) -> str:
    if not params:
        return url
    parsed = urlparse(url)
    values = parse_qs(parsed.query, keep_blank_values=True)
    for key, value in params.items():
        if value in (None, ""):
            continue
        values[key] = [str(value)]
    query = urlencode(sorted(values.items()), doseq=True)
    return urlunparse(parsed._replace(query=query))


def decode_json(resp: requests.Response) -> Dict[str, Any]:
    if not resp.content:
        return {}
    try:
        payload = resp.json()
    except ValueError as exc:
        raise ProtocolError(
            f"invalid JSON response: {exc}", resp.status_code, resp.headers.get(REQUEST_ID_HEADER, "")
        ) from exc
    if not isinstance(payload, dict):
        raise ProtocolError(
            "invalid JSON response: expected an object",
            resp.status_code,
            resp.headers.get(REQUEST_ID_HEADER, ""),
        )
    return payload


def dig(value: Any, *path: str, default: Any = None) -> Any:
    """Walk nested objects, returning ``default`` as soon as a step is missing."""
    for key in path:
        if not isinstance(value, dict) or key not in value or value[key] is None:
            return default
        value = value[key]
    return value


class PingenClient:
    def __init__(
        self,
        api_base: str,
        identity_base: str = "",
        access_token: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        debug: bool = False,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.identity_base = identity_base.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.debug = debug

    def _request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        data: Any = None,
        timeout: Optional[float] = None,
    ) -> requests.Response:
        req_headers = {"User-Agent": USER_AGENT}
        for key, value in (headers or {}).items():
            if value:
                req_headers[key] = value
        timeout = self.timeout if timeout is None else timeout
        # Zero or negative means no timeout.
        if timeout is not None and timeout <= 0:
            timeout = None
        if self.debug:
            print(f"HTTP {method} {url} timeout={timeout}", file=sys.stderr)
        resp = requests.request(method, url, headers=req_headers, data=data, timeout=timeout)
        if self.debug:
            print(f"HTTP {method} {url} -> {resp.status_code}", file=sys.stderr)
        return resp

    def _json_api(
        self,
        method: str,
        url: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: str = "",
    ) -> requests.Response:
        headers = {"Accept": JSON_API_TYPE}
        body = None
        if payload is not None:
            headers["Content-Type"] = JSON_API_TYPE
            body = json.dumps(payload)
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return self._request(method, url, headers=headers, data=body)

    @staticmethod
    def _check(resp: requests.Response, accepted: Iterable[int], message: str) -> None:
        if resp.status_code not in accepted:
            raise ApiError(message, resp.status_code, resp.headers.get(REQUEST_ID_HEADER, ""))

    def get_token(
        self, client_id: str, client_secret: str, scope: str = DEFAULT_SCOPE
    ) -> Tuple[Dict[str, Any], Mapping[str, str]]:
        form = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scope:
            form["scope"] = scope
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        resp = self._request("POST", f"{self.identity_base}/auth/access-tokens", headers=headers, data=form)
        self._check(resp, (200,), "token request failed")
        return decode_json(resp), resp.headers

    def list_organisations(self, params: Mapping[str, str]) -> Tuple[Dict[str, Any], Mapping[str, str]]:
        resp = self._json_api("GET", add_query(f"{self.api_base}/organisations", params))
        self._check(resp, (200,), "list organisations failed")
        return decode_json(resp), resp.headers

    def list_letters(self, org_id: str, params: Mapping[str, str]) -> Tuple[Dict[str, Any], Mapping[str, str]]:
        resp = self._json_api("GET", add_query(f"{self.api_base}/organisations/{org_id}/letters", params))
        self._check(resp, (200,), "list letters failed")
        return decode_json(resp), resp.headers

    def get_letter(self, org_id: str, letter_id: str) -> Tuple[Dict[str, Any], Mapping[str, str]]:
        resp = self._json_api("GET", f"{self.api_base}/organisations/{org_id}/letters/{letter_id}")
        self._check(resp, (200,), "get letter failed")
        return decode_json(resp), resp.headers

    def get_file_upload(self) -> Tuple[str, str, Mapping[str, str]]:
        resp = self._json_api("GET", f"{self.api_base}/file-upload")
        self._check(resp, (200,), "file upload request failed")
        payload = decode_json(resp)
        request_id = resp.headers.get(REQUEST_ID_HEADER, "")
        attributes = dig(payload, "data", "attributes")
        if not isinstance(attributes, dict):
            raise ProtocolError("file upload response missing attributes", resp.status_code, request_id)
        upload_url = attributes.get("url")
        signature = attributes.get("url_signature")
        if not isinstance(upload_url, str) or not isinstance(signature, str) or not upload_url or not signature:
            raise ProtocolError("file upload response missing url data", resp.status_code, request_id)
        return upload_url, signature, resp.headers

    def upload_file(self, upload_url: str, file_path: Path, timeout: Optional[float] = None) -> None:
        timeout = max(self.timeout if timeout is None else timeout, UPLOAD_MIN_TIMEOUT)
        size = file_path.stat().st_size
        with file_path.open("rb") as fh:
            resp = self._request(
                "PUT",
                upload_url,
                headers={"Content-Length": str(size)},
                data=fh,
                timeout=timeout,
            )
        self._check(resp, (200, 201, 204), "file upload failed")

    def create_letter(
        self, org_id: str, payload: Dict[str, Any], idempotency_key: str = ""
    ) -> Tuple[Dict[str, Any], Mapping[str, str]]:
        resp = self._json_api(
            "POST",
            f"{self.api_base}/organisations/{org_id}/letters",
            payload=payload,
            idempotency_key=idempotency_key,
        )
        self._check(resp, (200, 201), "create letter failed")
        return decode_json(resp), resp.headers

    def send_letter(
        self, org_id: str, letter_id: str, payload: Dict[str, Any], idempotency_key: str = ""
    ) -> Tuple[Dict[str, Any], Mapping[str, str]]:
        resp = self._json_api(
            "PATCH",
            f"{self.api_base}/organisations/{org_id}/letters/{letter_id}/send",
            payload=payload,
            idempotency_key=idempotency_key,
        )
        self._check(resp, (200, 204), "send letter failed")
        return decode_json(resp), resp.headers


def build_client(ctx: AppContext, access_token: str = "") -> PingenClient:
    return PingenClient(
        ctx.settings.api_base,
        ctx.settings.identity_base,
        access_token=access_token,
        timeout=ctx.timeout,
        debug=ctx.debug,
    )


def build_list_params(
    *,
    page: int = 0,
    limit: int = 0,
    sort: str = "",
    filter: str = "",
    query: str = "",
    include: str = "",
    fields: str = "",
    resource: str = "",
) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if page and page > 0:
        params["page[number]"] = str(page)
    if limit and limit > 0:
        params["page[limit]"] = str(limit)
    if sort:
        params["sort"] = sort
    if filter:
        if filter.startswith("@"):
            filter = read_local_text(Path(filter[1:])).strip()
        params["filter"] = filter
    if query:
        params["q"] = query
    if include:
        params["include"] = include
    if fields and resource:
        params[f"fields[{resource}]"] = fields
    return params


# Token manager


def token_is_fresh(settings: Settings, now: float) -> bool:
    if not settings.access_token:
        return False
    if settings.access_token_expires_at == 0:
        return True
    return now < settings.access_token_expires_at - TOKEN_EXPIRY_SKEW


def persist_token(path: Path, access_token: str, expires_at: int) -> bool:
    """Write a refreshed token into the persisted config, reporting success.

    The persisted record is re-read so that values coming from the
    environment or flags are never written to disk.
    """
    try:
        stored, _ = load_config(path)
        stored = replace(stored, access_token=access_token, access_token_expires_at=expires_at)
        save_config(path, stored)
    except (OSError, CliError):
        return False
    return True


def ensure_access_token(ctx: AppContext, now: Optional[float] = None) -> Tuple[str, Settings]:
    now = time.time() if now is None else now
    settings = ctx.settings
    if token_is_fresh(settings, now):
        return settings.access_token, settings

    if not settings.client_id or not settings.client_secret:
        raise ConfigurationError(
            "credentials required: set client id/secret or pass --access-token (see `auth token`)"
        )
    log_progress(ctx, "refreshing access token...")
    payload, headers = build_client(ctx).get_token(settings.client_id, settings.client_secret, DEFAULT_SCOPE)
    token = payload.get("access_token")
    if not isinstance(token, str) or not token:
        raise ProtocolError("access token missing in response", 200, headers.get(REQUEST_ID_HEADER, ""))
    expires_in = payload.get("expires_in")
    expires_at = int(now + expires_in) if isinstance(expires_in, (int, float)) and expires_in else 0
    settings = replace(settings, access_token=token, access_token_expires_at=expires_at)

    if ctx.config_loaded and not persist_token(ctx.config_path, token, expires_at):
        if ctx.debug:
            print(f"could not save refreshed token to {ctx.config_path}", file=sys.stderr)
    return token, settings


# Output


def log_progress(ctx: AppContext, message: str) -> None:
    if ctx.verbose and not ctx.quiet:
        print(message, file=sys.stderr)


def string_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resource_row(resource: Any) -> Dict[str, Any]:
    row = {"id": dig(resource, "id", default="")}
    attributes = dig(resource, "attributes", default={})
    if isinstance(attributes, dict):
        row.update(attributes)
    return row


def envelope_rows(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    data = payload.get("data")
    if isinstance(data, list):
        return [resource_row(item) for item in data]
    if isinstance(data, dict):
        return [resource_row(data)]
    return []


def format_output(payload: Dict[str, Any], fields: List[str], output_format: str) -> str:
    if output_format == "json":
        return json.dumps(payload, indent=2)

    if output_format == "yaml":
        import yaml

        return yaml.safe_dump(payload, sort_keys=False)

    projected = [{f: string_value(row.get(f)) for f in fields} for row in envelope_rows(payload)]

    if output_format == "csv":
        import csv
        from io import StringIO

        buf = StringIO()
        writer = csv.DictWriter(buf, fieldnames=fields)
        writer.writeheader()
        writer.writerows(projected)
        return buf.getvalue()

    # plain table (default)
    table = [[row[f] for f in fields] for row in projected]
    return tabulate(table, headers=fields, tablefmt="github")


def emit_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


# Letter workflow


def check_choice(name: str, value: str, allowed: Iterable[str]) -> str:
    allowed = tuple(allowed)
    if value not in allowed:
        raise ValidationError(f"invalid {name} {value!r} (use {', '.join(allowed)})")
    return value


def parse_json_object(raw: str, source: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid JSON in {source}: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError(f"invalid JSON in {source}: expected an object")
    return parsed


def load_meta_data(meta_json: Optional[str], meta_file: Optional[str]) -> Optional[Dict[str, Any]]:
    if meta_json and meta_file:
        raise ValidationError("use either --meta-json or --meta-file, not both")
    if meta_file:
        return parse_json_object(read_local_text(Path(meta_file)), meta_file)
    if meta_json:
        if meta_json.startswith("@"):
            return parse_json_object(read_local_text(Path(meta_json[1:])), meta_json[1:])
        return parse_json_object(meta_json, "--meta-json")
    return None


def default_file_name(file_path: str) -> str:
    name = Path(file_path).name
    if not name or name in (".", ".."):
        return DEFAULT_FILE_NAME
    return name


def require_organisation(ctx: AppContext) -> str:
    if not ctx.settings.organisation_id:
        raise ValidationError("organisation id required (use --org or PINGEN_ORG_ID)")
    return ctx.settings.organisation_id


def check_source_file(file_path: str) -> Path:
    path = Path(file_path)
    if not path.is_file() or not os.access(path, os.R_OK):
        raise ValidationError(f"file not found or not readable: {file_path}")
    return path


def letter_create_attributes(
    *,
    file_name: str,
    address_position: str,
    auto_send: bool,
    delivery_product: Optional[str] = None,
    print_mode: Optional[str] = None,
    print_spectrum: Optional[str] = None,
    meta_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    attributes: Dict[str, Any] = {
        "file_original_name": file_name,
        "address_position": check_choice("address-position", address_position, ADDRESS_POSITIONS),
        "auto_send": auto_send,
    }
    if delivery_product:
        attributes["delivery_product"] = check_choice("delivery-product", delivery_product, DELIVERY_PRODUCTS)
    if print_mode:
        attributes["print_mode"] = check_choice("print-mode", print_mode, PRINT_MODES)
    if print_spectrum:
        attributes["print_spectrum"] = check_choice("print-spectrum", print_spectrum, PRINT_SPECTRUMS)
    if meta_data is not None:
        attributes["meta_data"] = meta_data
    return attributes


def letter_send_attributes(
    *,
    delivery_product: Optional[str],
    print_mode: Optional[str],
    print_spectrum: Optional[str],
    meta_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if not delivery_product or not print_mode or not print_spectrum:
        raise ValidationError("delivery-product, print-mode, and print-spectrum are required")
    attributes: Dict[str, Any] = {
        "delivery_product": check_choice("delivery-product", delivery_product, DELIVERY_PRODUCTS),
        "print_mode": check_choice("print-mode", print_mode, PRINT_MODES),
        "print_spectrum": check_choice("print-spectrum", print_spectrum, PRINT_SPECTRUMS),
    }
    if meta_data is not None:
        attributes["meta_data"] = meta_data
    return attributes


def create_letter(
    ctx: AppContext,
    file_path: Path,
    attributes: Dict[str, Any],
    idempotency_key: str = "",
) -> Tuple[Dict[str, Any], Settings]:
    """Upload ``file_path`` and create a letter from it.

    Runs token, upload slot, upload and create in order; any failure aborts
    the remaining steps. Returns the created letter and the (possibly
    refreshed) settings.
    """
    org_id = require_organisation(ctx)
    token, settings = ensure_access_token(ctx)
    client = build_client(replace(ctx, settings=settings), token)

    log_progress(ctx, "requesting upload url...")
    upload_url, signature, _ = client.get_file_upload()

    log_progress(ctx, "uploading file...")
    client.upload_file(upload_url, file_path, ctx.timeout)

    body_attributes: Dict[str, Any] = {
        "file_original_name": attributes["file_original_name"],
        "file_url": upload_url,
        "file_url_signature": signature,
        "address_position": attributes["address_position"],
        "auto_send": attributes["auto_send"],
    }
    for key in ("delivery_product", "print_mode", "print_spectrum", "meta_data"):
        if key in attributes:
            body_attributes[key] = attributes[key]
    body = {"data": {"type": "letters", "attributes": body_attributes}}

    log_progress(ctx, "creating letter...")
    payload, _ = client.create_letter(org_id, body, idempotency_key)
    return payload, settings


def send_letter(
    ctx: AppContext,
    letter_id: str,
    attributes: Dict[str, Any],
    idempotency_key: str = "",
) -> Tuple[Dict[str, Any], Settings]:
    org_id = require_organisation(ctx)
    token, settings = ensure_access_token(ctx)
    client = build_client(replace(ctx, settings=settings), token)
    body = {"data": {"id": letter_id, "type": "letters", "attributes": attributes}}
    log_progress(ctx, "sending letter...")
    payload, _ = client.send_letter(org_id, letter_id, body, idempotency_key)
    return payload or {}, settings


# Handlers for subcommands


def handle_auth_token(args: argparse.Namespace, ctx: AppContext) -> None:
    settings = ctx.settings
    if not settings.client_id or not settings.client_secret:
        raise ConfigurationError("client id/secret required")
    payload, _ = build_client(ctx).get_token(settings.client_id, settings.client_secret, args.scope)

    if args.save or args.save_credentials:
        stored, _ = load_config(ctx.config_path)
        stored = replace(
            stored,
            env=settings.env,
            api_base=settings.api_base,
            identity_base=settings.identity_base,
        )
        if args.save:
            token = payload.get("access_token")
            if isinstance(token, str):
                stored.access_token = token
            expires_in = payload.get("expires_in")
            if isinstance(expires_in, (int, float)) and expires_in:
                stored.access_token_expires_at = int(time.time() + expires_in)
            else:
                stored.access_token_expires_at = 0
        if args.save_credentials:
            stored.client_id = settings.client_id
            stored.client_secret = settings.client_secret
        save_config(ctx.config_path, stored)
    emit_json(payload)


def handle_config_show(args: argparse.Namespace, ctx: AppContext) -> None:
    stored, _ = load_config(ctx.config_path)
    emit_json(stored.to_dict())


def handle_config_set(args: argparse.Namespace, ctx: AppContext) -> None:
    if args.key not in CONFIG_KEYS:
        raise ValidationError(f"unknown config key: {args.key}")
    stored, _ = load_config(ctx.config_path)
    save_config(ctx.config_path, replace(stored, **{args.key: args.value}))
    if not ctx.quiet:
        print(f"set {args.key}")


def handle_config_unset(args: argparse.Namespace, ctx: AppContext) -> None:
    if args.key not in CONFIG_KEYS:
        raise ValidationError(f"unknown config key: {args.key}")
    stored, _ = load_config(ctx.config_path)
    changes: Dict[str, Any] = {args.key: ""}
    if args.key == "access_token":
        changes["access_token_expires_at"] = 0
    save_config(ctx.config_path, replace(stored, **changes))
    if not ctx.quiet:
        print(f"unset {args.key}")


def _list_params(args: argparse.Namespace, resource: str) -> Dict[str, str]:
    return build_list_params(
        page=args.page,
        limit=args.limit,
        sort=args.sort,
        filter=args.filter,
        query=args.q,
        include=args.include,
        fields=args.fields,
        resource=resource,
    )


def handle_org_list(args: argparse.Namespace, ctx: AppContext) -> None:
    params = _list_params(args, "organisations")
    token, _ = ensure_access_token(ctx)
    payload, _ = build_client(ctx, token).list_organisations(params)
    print(format_output(payload, ORGANISATION_FIELDS, ctx.output_format))


def handle_letters_list(args: argparse.Namespace, ctx: AppContext) -> None:
    org_id = require_organisation(ctx)
    params = _list_params(args, "letters")
    token, _ = ensure_access_token(ctx)
    payload, _ = build_client(ctx, token).list_letters(org_id, params)
    print(format_output(payload, LETTER_FIELDS, ctx.output_format))


def handle_letters_get(args: argparse.Namespace, ctx: AppContext) -> None:
    org_id = require_organisation(ctx)
    token, _ = ensure_access_token(ctx)
    payload, _ = build_client(ctx, token).get_letter(org_id, args.id)
    print(format_output(payload, LETTER_FIELDS, ctx.output_format))


def handle_letters_create(args: argparse.Namespace, ctx: AppContext) -> None:
    org_id = require_organisation(ctx)
    file_path = check_source_file(args.file)
    meta_data = load_meta_data(args.meta_json, args.meta_file)
    attributes = letter_create_attributes(
        file_name=args.file_name or default_file_name(args.file),
        address_position=args.address_position,
        auto_send=args.auto_send,
        delivery_product=args.delivery_product,
        print_mode=args.print_mode,
        print_spectrum=args.print_spectrum,
        meta_data=meta_data,
    )

    if ctx.dry_run:
        emit_json(
            {
                "action": "letters.create",
                "file": args.file,
                "organisation_id": org_id,
                "attributes": attributes,
            }
        )
        return

    payload, _ = create_letter(ctx, file_path, attributes, args.idempotency_key or "")
    print(format_output(payload, LETTER_FIELDS, ctx.output_format))


def handle_letters_send(args: argparse.Namespace, ctx: AppContext) -> None:
    org_id = require_organisation(ctx)
    attributes = letter_send_attributes(
        delivery_product=args.delivery_product,
        print_mode=args.print_mode,
        print_spectrum=args.print_spectrum,
        meta_data=load_meta_data(args.meta_json, args.meta_file),
    )

    if ctx.dry_run:
        emit_json(
            {
                "action": "letters.send",
                "organisation_id": org_id,
                "letter_id": args.id,
                "attributes": attributes,
            }
        )
        return

    payload, _ = send_letter(ctx, args.id, attributes, args.idempotency_key or "")
    print(format_output(payload, LETTER_FIELDS, ctx.output_format))


def _add_list_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--page", type=int, default=0, help="Page number")
    parser.add_argument("--limit", type=int, default=0, help="Page size")
    parser.add_argument("--sort", default="", help="Sort expression")
    parser.add_argument("--filter", default="", help="Filter JSON string or @path")
    parser.add_argument("--q", default="", help="Full-text query")
    parser.add_argument("--include", default="", help="Include relationships")
    parser.add_argument("--fields", default="", help="Sparse fieldset for the primary type")


def _add_meta_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--meta-json", help="Meta data JSON string or @path")
    parser.add_argument("--meta-file", help="Meta data JSON file path")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pingen-cli", description="Send letters through Pingen from the command line"
    )
    parser.add_argument("--version", action="version", version=f"pingen-cli {VERSION}")
    parser.add_argument("--env", help="API environment: staging (default) or production")
    parser.add_argument("--api-base", help="Override API base URL")
    parser.add_argument("--identity-base", help="Override identity base URL")
    parser.add_argument("--org", help="Organisation UUID")
    parser.add_argument("--access-token", help="Access token (prefer env PINGEN_ACCESS_TOKEN)")
    parser.add_argument("--client-id", help="OAuth client id (prefer env PINGEN_CLIENT_ID)")
    parser.add_argument("--client-secret", help="OAuth client secret (prefer env/file over flags)")
    parser.add_argument("--client-secret-file", help="Read client secret from file")
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"HTTP timeout in seconds (default: {DEFAULT_TIMEOUT})",
    )
    parser.add_argument(
        "--format",
        dest="output_format",
        default="plain",
        choices=["plain", "csv", "json", "yaml"],
        help="Output format",
    )
    parser.add_argument("--json", dest="output_format", action="store_const", const="json", help="Output JSON")
    parser.add_argument(
        "--plain", dest="output_format", action="store_const", const="plain", help="Output a plain table (default)"
    )
    parser.add_argument("--quiet", action="store_true", help="Suppress non-essential output")
    parser.add_argument("--verbose", action="store_true", help="Print workflow progress to stderr")
    parser.add_argument("--debug", action="store_true", help="Print HTTP calls to stderr")
    parser.add_argument("--dry-run", action="store_true", help="Preview actions without sending")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Auth
    auth = subparsers.add_parser("auth", help="Authentication")
    auth_sub = auth.add_subparsers(dest="action", required=True)

    auth_token = auth_sub.add_parser("token", help="Fetch an access token")
    auth_token.add_argument("--scope", default=DEFAULT_SCOPE, help="OAuth scope")
    auth_token.add_argument("--save", action="store_true", help="Save token in config")
    auth_token.add_argument("--save-credentials", action="store_true", help="Save client id/secret in config")
    auth_token.set_defaults(func=handle_auth_token)

    # Config
    config = subparsers.add_parser("config", help="Persisted configuration")
    config_sub = config.add_subparsers(dest="action", required=True)

    config_show = config_sub.add_parser("show", help="Show config")
    config_show.set_defaults(func=handle_config_show)

    config_set = config_sub.add_parser("set", help="Set config value")
    config_set.add_argument("key", help=f"One of: {', '.join(CONFIG_KEYS)}")
    config_set.add_argument("value")
    config_set.set_defaults(func=handle_config_set)

    config_unset = config_sub.add_parser("unset", help="Unset config value")
    config_unset.add_argument("key", help=f"One of: {', '.join(CONFIG_KEYS)}")
    config_unset.set_defaults(func=handle_config_unset)

    # Organisations
    org = subparsers.add_parser("org", help="Organisation operations")
    org_sub = org.add_subparsers(dest="action", required=True)

    org_list = org_sub.add_parser("list", help="List organisations")
    _add_list_arguments(org_list)
    org_list.set_defaults(func=handle_org_list)

    # Letters
    letters = subparsers.add_parser("letters", help="Letter operations")
    letters_sub = letters.add_subparsers(dest="action", required=True)

    letters_list = letters_sub.add_parser("list", help="List letters")
    _add_list_arguments(letters_list)
    letters_list.set_defaults(func=handle_letters_list)

    letters_get = letters_sub.add_parser("get", help="Get a letter")
    letters_get.add_argument("id", help="Letter ID")
    letters_get.set_defaults(func=handle_letters_get)

    letters_create = letters_sub.add_parser("create", help="Upload a PDF and create a letter")
    letters_create.add_argument("--file", required=True, help="PDF file to upload")
    letters_create.add_argument("--file-name", help="Original file name shown in Pingen")
    letters_create.add_argument("--address-position", default="left", help="Address position (left/right)")
    letters_create.add_argument("--auto-send", action="store_true", help="Automatically send when processed")
    letters_create.add_argument("--delivery-product", help=f"One of: {', '.join(DELIVERY_PRODUCTS)}")
    letters_create.add_argument("--print-mode", help=f"One of: {', '.join(PRINT_MODES)}")
    letters_create.add_argument("--print-spectrum", help=f"One of: {', '.join(PRINT_SPECTRUMS)}")
    _add_meta_arguments(letters_create)
    letters_create.add_argument("--idempotency-key", help="Idempotency key for the create request")
    letters_create.set_defaults(func=handle_letters_create)

    letters_send = letters_sub.add_parser("send", help="Send a letter")
    letters_send.add_argument("id", help="Letter ID")
    letters_send.add_argument("--delivery-product", help=f"One of: {', '.join(DELIVERY_PRODUCTS)}")
    letters_send.add_argument("--print-mode", help=f"One of: {', '.join(PRINT_MODES)}")
    letters_send.add_argument("--print-spectrum", help=f"One of: {', '.join(PRINT_SPECTRUMS)}")
    _add_meta_arguments(letters_send)
    letters_send.add_argument("--idempotency-key", help="Idempotency key for the send request")
    letters_send.set_defaults(func=handle_letters_send)

    return parser


def build_context(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> AppContext:
    path = config_path(environ)
    stored, loaded = load_config(path)
    settings = resolve_settings(
        stored,
        settings_from_env(environ),
        settings_from_args(args),
        client_secret_file=args.client_secret_file,
    )
    return AppContext(
        settings=settings,
        config_path=path,
        config_loaded=loaded,
        timeout=args.timeout,
        output_format=args.output_format,
        dry_run=args.dry_run,
        quiet=args.quiet,
        verbose=args.verbose,
        debug=args.debug,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        ctx = build_context(args)
        args.func(args, ctx)
    except CliError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(exc.exit_code) from exc
    except (OSError, requests.RequestException) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
