#!/usr/bin/env python3
"""
OPML 2.0 reading and writing.

`read_opml` flattens an outline tree into the feed entries it contains;
`generate_opml` and `write_opml` produce the subscription list written by
an export run.
"""

from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Iterable, List
import xml.etree.ElementTree as ET
from xml.dom import minidom
import os
import shutil
import tempfile

from config import get_logger
from errors import OPMLError
from models import FeedDiscoveryResult, FeedEntry

logger = get_logger("opml")

OPML_VERSION = "2.0"
OPML_DOCS = "http://www.opml.org/spec2"
OWNER_NAME = "linkding-to-opml"


def _collect_entries(element: ET.Element, entries: List[FeedEntry]) -> None:
    for outline in element.findall("outline"):
        feed_url = (outline.get("xmlUrl") or "").strip()
        if feed_url:
            entries.append(
                FeedEntry(
                    feed_url=feed_url,
                    html_url=(outline.get("htmlUrl") or "").strip(),
                    title=(outline.get("title") or outline.get("text") or "").strip(),
                    description=(outline.get("description") or "").strip(),
                )
            )
        # Category outlines nest feeds at any depth
        _collect_entries(outline, entries)


def read_opml(file_path: str) -> List[FeedEntry]:
    """Read an OPML file and return every outline that carries an xmlUrl.

    Raises:
        OPMLError: The file cannot be read or is not an OPML document.
    """
    try:
        tree = ET.parse(file_path)
    except OSError as e:
        raise OPMLError(f"failed to read OPML file {file_path}: {e}") from e
    except ET.ParseError as e:
        raise OPMLError(f"failed to parse OPML file {file_path}: {e}") from e

    root = tree.getroot()
    if root.tag != "opml":
        raise OPMLError(f"{file_path} is not an OPML document (root element <{root.tag}>)")
    body = root.find("body")
    if body is None:
        raise OPMLError(f"{file_path} has no <body> element")

    entries: List[FeedEntry] = []
    _collect_entries(body, entries)
    logger.info(f"Found {len(entries)} feed entries in {file_path}")
    return entries


def generate_opml(results: Iterable[FeedDiscoveryResult], title: str = "Linkding Feeds") -> ET.ElementTree:
    """Build an OPML 2.0 document from the successful discovery results."""
    now = format_datetime(datetime.now(timezone.utc))
    root = ET.Element("opml", version=OPML_VERSION)
    head = ET.SubElement(root, "head")
    ET.SubElement(head, "title").text = title
    ET.SubElement(head, "dateCreated").text = now
    ET.SubElement(head, "dateModified").text = now
    ET.SubElement(head, "ownerName").text = OWNER_NAME
    ET.SubElement(head, "docs").text = OPML_DOCS
    body = ET.SubElement(root, "body")

    count = 0
    for result in results:
        if not result.is_successful:
            continue
        ET.SubElement(
            body,
            "outline",
            {
                "title": result.feed_title,
                "text": result.feed_title,
                "xmlUrl": result.feed_url,
                "htmlUrl": result.url,
                "type": "rss",
            },
        )
        count += 1
        logger.debug(f"Added feed {result.feed_url} ('{result.feed_title}') to OPML")

    logger.info(f"Generated OPML document with {count} outlines")
    return ET.ElementTree(root)


def serialize_opml(tree: ET.ElementTree) -> bytes:
    rough = ET.tostring(tree.getroot(), encoding="utf-8")
    return minidom.parseString(rough).toprettyxml(indent="  ", encoding="UTF-8")


def write_opml(tree: ET.ElementTree, file_path: str) -> None:
    """Pretty-print `tree` and atomically replace `file_path` with it.

    Raises:
        OSError: The file could not be written.
    """
    directory = os.path.dirname(os.path.abspath(file_path))
    os.makedirs(directory, exist_ok=True)
    content = serialize_opml(tree)

    with tempfile.NamedTemporaryFile(mode="wb", suffix=".opml", dir=directory, delete=False) as temp_file:
        temp_file.write(content)
        temp_file.flush()
        os.fsync(temp_file.fileno())
        temp_path = temp_file.name

    shutil.move(temp_path, file_path)
    outlines = len(tree.getroot().findall("./body/outline"))
    logger.info(f"Wrote OPML file {file_path} with {outlines} outlines")
