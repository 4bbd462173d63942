"""Frontmatter parsing for ticket documents."""

import re
from typing import Any

import yaml

from ticketflow.logger import get_logger

logger = get_logger(__name__)

# Pattern to match YAML frontmatter (content between first two ---) and the rest
FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)(.*)", re.DOTALL)


def parse_ticket_document(text: str | None) -> tuple[dict[str, Any], str]:
    """Split a ticket document into its YAML header and body.

    The header is the YAML content between the first two `---` delimiters
    at the start of the document. For example:

        ---
        title: Add login endpoint
        priority: high
        ---

        Free-text details here...

    Args:
        text: Document text, may be None

    Returns:
        Tuple of (header dict, body). Without frontmatter the header is empty
        and the body is the whole text; a header that fails to parse is
        dropped with a warning.
    """
    if not text:
        return {}, ""

    match = FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text

    frontmatter_text, body = match.group(1), match.group(2)
    try:
        result = yaml.safe_load(frontmatter_text)
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse ticket frontmatter: {e}")
        return {}, body

    if isinstance(result, dict):
        return result, body
    return {}, body
