"""Element helpers shared by the WMS and WFS capability readers.

Capability documents come with or without namespaces depending on version and
vendor, so lookups compare local names only.
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Iterator, List, Optional

from .base import query_param, with_query_params

XLINK_HREF = "{http://www.w3.org/1999/xlink}href"


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if isinstance(tag, str) else ""


def iter_children(element: Optional[ET.Element], name: str) -> Iterator[ET.Element]:
    if element is None:
        return
    for child in element:
        if local_name(child.tag) == name:
            yield child


def find_child(element: Optional[ET.Element], name: str) -> Optional[ET.Element]:
    return next(iter_children(element, name), None)


def child_text(element: Optional[ET.Element], name: str) -> Optional[str]:
    child = find_child(element, name)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return text or None


def operation_names(request_element: Optional[ET.Element]) -> List[str]:
    """Names of the operations listed under a `Capability/Request` element."""
    if request_element is None:
        return []
    return [local_name(child.tag) for child in request_element if local_name(child.tag)]


def capabilities_url(url: str, service: str) -> str:
    request = query_param(url, "REQUEST")
    if request is not None and request.lower() == "getcapabilities":
        return url
    return with_query_params(url, [("SERVICE", service), ("REQUEST", "GetCapabilities")])


def parse_document(body: bytes) -> ET.Element:
    return ET.fromstring(body)
