"""Structural diff over parsed XML element trees.

Tags are compared in Clark notation (``{uri}local``), so two documents that
bind different prefixes to the same namespace URI compare equal, while the
same prefix bound to different URIs does not.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional
import xml.etree.ElementTree as ET

from spec_normalizer.wsdl import local_name

from .models import Mismatch, Strictness


def text_equal(expected: str, actual: str) -> bool:
    if expected == actual:
        return True
    try:
        return Decimal(expected) == Decimal(actual)
    except InvalidOperation:
        return False


def payload_element(root: ET.Element) -> ET.Element:
    """Return the first child of a SOAP Body, or ``root`` when it is not an envelope."""

    if local_name(root.tag) != "Envelope":
        return root
    for child in root:
        if local_name(child.tag) == "Body":
            return next(iter(child), child)
    return root


def diff_xml(
    expected: ET.Element,
    actual: ET.Element,
    strictness: Strictness = Strictness.LENIENT,
    path: Optional[str] = None,
) -> list[Mismatch]:
    """Compare two elements; child order is not significant."""

    here = path or f"/{local_name(expected.tag)}"
    if expected.tag != actual.tag:
        return [Mismatch(path=here, expected=expected.tag, actual=actual.tag, message="element differs")]

    mismatches: list[Mismatch] = []
    for name, value in expected.attrib.items():
        if name not in actual.attrib:
            mismatches.append(Mismatch(path=f"{here}/@{name}", expected=value, message="missing attribute"))
        elif not text_equal(value.strip(), actual.attrib[name].strip()):
            mismatches.append(
                Mismatch(path=f"{here}/@{name}", expected=value, actual=actual.attrib[name], message="value differs")
            )
    if strictness is Strictness.STRICT:
        for name, value in actual.attrib.items():
            if name not in expected.attrib:
                mismatches.append(Mismatch(path=f"{here}/@{name}", actual=value, message="unexpected attribute"))

    expected_text = (expected.text or "").strip()
    actual_text = (actual.text or "").strip()
    if (expected_text or len(expected) == 0) and not text_equal(expected_text, actual_text):
        mismatches.append(Mismatch(path=here, expected=expected_text, actual=actual_text, message="text differs"))

    unused = list(actual)
    for child in expected:
        child_path = f"{here}/{local_name(child.tag)}"
        candidates = [node for node in unused if node.tag == child.tag]
        if not candidates:
            mismatches.append(Mismatch(path=child_path, expected=child.tag, message="missing element"))
            continue
        best: Optional[list[Mismatch]] = None
        best_node = candidates[0]
        for node in candidates:
            result = diff_xml(child, node, strictness, child_path)
            if not result:
                best, best_node = result, node
                break
            if best is None:
                best, best_node = result, node
        unused.remove(best_node)
        mismatches.extend(best or [])
    if strictness is Strictness.STRICT:
        for node in unused:
            mismatches.append(
                Mismatch(path=f"{here}/{local_name(node.tag)}", actual=node.tag, message="unexpected element")
            )
    return mismatches
