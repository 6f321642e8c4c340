"""
Content negotiation — every resource can be read and written as JSON or XML.

Output format, in priority order:
  1. ?format=XML|JSON (or the legacy ?formato=), or a "format" field in the body
  2. The Accept header, honouring q-values
  3. XML

XML rendering rules (lxml):
  - dict   -> one child element per key
  - list   -> a container element whose children use the singular tag
              ("cards" -> <card>, "fields" -> <field>)
  - None   -> an empty element
  - other  -> element text via str()

XML request bodies are parsed with entity resolution and network access
disabled. Known root tags (authorization, card, payment and their Spanish
aliases) are unwrapped, and child element texts become a flat dict.
"""

import json

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from lxml import etree

XML = "XML"
JSON = "JSON"

XML_MEDIA_TYPE = "application/xml"
_XML_TYPES = {"application/xml", "text/xml"}
_JSON_TYPES = {"application/json"}
_WILDCARDS = {"*/*", "application/*", "text/*"}

# entity expansion and DTD fetching off
_SAFE_PARSER = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    remove_blank_text=True,
    load_dtd=False,
)


# ---------------------------------------------------------------------------
# Format selection
# ---------------------------------------------------------------------------

def _parse_accept(header: str) -> list[tuple[float, int, str]]:
    entries = []
    for position, part in enumerate(header.split(",")):
        media, _, params = part.strip().partition(";")
        media = media.strip().lower()
        if not media:
            continue
        quality = 1.0
        for param in params.split(";"):
            name, _, value = param.strip().partition("=")
            if name == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        entries.append((quality, position, media))
    # highest q first, then the order the client listed them in
    entries.sort(key=lambda entry: (-entry[0], entry[1]))
    return entries


def format_from_accept(header: str | None) -> str:
    """Pick XML or JSON from an Accept header. Wildcards and absence mean XML."""
    if not header:
        return XML
    for quality, _, media in _parse_accept(header):
        if quality <= 0:
            continue
        if media in _XML_TYPES or media in _WILDCARDS:
            return XML
        if media in _JSON_TYPES or media.endswith("+json"):
            return JSON
    return XML


def decide_format(request: Request) -> str:
    """Decide the response format for a request."""
    explicit = (
        request.query_params.get("format")
        or request.query_params.get("formato")
        or getattr(request.state, "requested_format", None)
        or ""
    )
    explicit = str(explicit).strip().upper()
    if explicit in (XML, JSON):
        return explicit
    return format_from_accept(request.headers.get("accept"))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _singular(tag: str) -> str:
    return tag[:-1] if tag.endswith("s") and len(tag) > 1 else "item"


def _append(parent, tag: str, value) -> None:
    node = etree.SubElement(parent, tag)
    _fill(node, tag, value)


def _fill(node, tag: str, value) -> None:
    if value is None:
        return
    if isinstance(value, dict):
        for key, item in value.items():
            _append(node, str(key), item)
    elif isinstance(value, (list, tuple)):
        child_tag = _singular(tag)
        for item in value:
            _append(node, child_tag, item)
    elif isinstance(value, bool):
        node.text = "true" if value else "false"
    else:
        node.text = str(value)


def to_xml(root_tag: str, payload) -> bytes:
    """Serialize a JSON-compatible payload under the given root tag."""
    root = etree.Element(root_tag)
    _fill(root, root_tag, payload)
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)


def render(
    request: Request,
    root_tag: str,
    payload,
    status_code: int = 200,
    headers: dict | None = None,
) -> Response:
    """Render a JSON-compatible payload in the negotiated format."""
    if decide_format(request) == XML:
        return Response(
            content=to_xml(root_tag, payload),
            status_code=status_code,
            media_type=XML_MEDIA_TYPE,
            headers=headers,
        )
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def render_error(
    request: Request,
    status_code: int,
    code: str,
    details: dict | None = None,
) -> Response:
    """Render {"error": {"code": ..., **details}} / <error><code>...</code>...</error>."""
    body = {"code": code, **(details or {})}
    if decide_format(request) == XML:
        return Response(
            content=to_xml("error", body),
            status_code=status_code,
            media_type=XML_MEDIA_TYPE,
        )
    return JSONResponse(content={"error": body}, status_code=status_code)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

KNOWN_ROOTS = {
    "authorization",
    "autorizacion",
    "card",
    "tarjeta",
    "payment",
    "pago",
}


def is_xml_request(request: Request) -> bool:
    content_type = request.headers.get("content-type", "").lower()
    return "application/xml" in content_type or "text/xml" in content_type


def parse_xml_body(raw: bytes) -> dict:
    """
    Parse an XML body into a flat dict of child element texts.

    Raises:
        ValueError: If the document is not well-formed.
    """
    try:
        root = etree.fromstring(raw, parser=_SAFE_PARSER)
    except etree.XMLSyntaxError as exc:
        raise ValueError(str(exc)) from exc
    if root is None:
        raise ValueError("Empty XML document")

    container = root
    # <request><authorization>...</authorization></request> style wrapping
    if root.tag not in KNOWN_ROOTS and len(root) == 1 and root[0].tag in KNOWN_ROOTS:
        container = root[0]

    data = {}
    for child in container:
        if not isinstance(child.tag, str):
            # comments and processing instructions
            continue
        data[child.tag] = (child.text or "").strip()
    return data


async def read_body(request: Request) -> dict:
    """
    Read the request body as a dict, from XML or JSON.

    A "format"/"formato" field in the body is remembered on request.state
    so the response is rendered in the requested format.

    Raises:
        MalformedBodyError: If the body cannot be parsed.
    """
    from card_issuer.exceptions import MalformedBodyError

    raw = await request.body()
    if not raw.strip():
        return {}

    if is_xml_request(request):
        try:
            data = parse_xml_body(raw)
        except ValueError:
            raise MalformedBodyError(XML)
    else:
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise MalformedBodyError(JSON)
        if not isinstance(data, dict):
            raise MalformedBodyError(JSON)

    requested = data.get("format") or data.get("formato")
    if requested:
        request.state.requested_format = str(requested)
    return data


def pick_aliases(data: dict, aliases: dict[str, tuple[str, ...]]) -> dict:
    """
    Map aliased input keys onto canonical field names.

    The first alias present wins; fields with no alias present are omitted
    so Pydantic defaults apply.
    """
    picked = {}
    for canonical, names in aliases.items():
        for name in names:
            if name in data and data[name] is not None:
                picked[canonical] = data[name]
                break
    return picked
