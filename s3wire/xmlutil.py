"""Namespace-agnostic helpers for S3 XML payloads."""

import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Optional

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


def local_name(tag: str) -> str:
    """Strip an ``{namespace}`` prefix from a tag."""
    return tag.rsplit("}", 1)[-1]


def parse(data: bytes) -> ET.Element:
    """Parse an XML document.

    Raises:
        ValueError: If the payload is not well-formed XML.
    """
    try:
        return ET.fromstring(data)
    except ET.ParseError as e:
        raise ValueError(f"Malformed XML response: {e}") from e


def children(element: ET.Element, name: str) -> list[ET.Element]:
    """Direct children with the given local name."""
    return [child for child in element if local_name(child.tag) == name]


def child_text(element: ET.Element, name: str, default: Optional[str] = None) -> Optional[str]:
    """Text of the first direct child with the given local name."""
    for child in element:
        if local_name(child.tag) == name:
            return child.text if child.text is not None else ""
    return default


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp as used in S3 listings."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def build(root_name: str, items: list[tuple[str, list[tuple[str, str]]]]) -> bytes:
    """Build a two-level document such as CompleteMultipartUpload.

    Args:
        root_name: Name of the root element.
        items: (element name, [(child name, text), ...]) for each entry.

    Returns:
        UTF-8 encoded XML document.
    """
    root = ET.Element(root_name, xmlns=S3_NAMESPACE)
    for name, fields in items:
        node = ET.SubElement(root, name)
        for field_name, text in fields:
            ET.SubElement(node, field_name).text = text
    return ET.tostring(root, encoding="utf-8", xml_declaration=False)


def build_flat(root_name: str, fields: list[tuple[str, str]]) -> bytes:
    """Build a one-level document such as CreateBucketConfiguration."""
    root = ET.Element(root_name, xmlns=S3_NAMESPACE)
    for field_name, text in fields:
        ET.SubElement(root, field_name).text = text
    return ET.tostring(root, encoding="utf-8", xml_declaration=False)
