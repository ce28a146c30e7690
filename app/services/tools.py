"""
TOOL REGISTRY MODULE
====================

Declares the tools the model may call and binds each tool name to an async executor
for one caller (the user's token is forwarded to the content service).

TOOLS:
  find_content(query, type?)                                   read only
  create_content(title, description, content_type, parent_id?, confirm?)
  edit_content(content_id, changes{title?, description?}, confirm?)

CONFIRMATION:
  create_content and edit_content are two-phase. Without confirm they only build a
  preview (title, HTML, plain text, how to proceed) and touch nothing. With
  confirm: true they call the content service. The state lives entirely in the
  arguments: resubmitting the same arguments with confirm set recomputes the same
  preview content and commits it. Nothing is kept server side between the two calls.

ERRORS:
  Every executor checks its argument shape first and raises ToolArgumentError with a
  message the model can act on. The orchestrator turns any executor exception into a
  tool-error result; it never ends the turn.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.errors import ToolArgumentError
from app.services.content_client import ContentClient
from app.services.formatter import html_to_plain_text, to_rich_html


logger = logging.getLogger("SAGE")

ToolExecutor = Callable[[Dict[str, Any]], Awaitable[Any]]

CONTENT_TYPES = ("subject", "problem", "idea")
SEARCH_TYPES = ("all",) + CONTENT_TYPES

# Bucket names used by the categorized search response, in the order they are merged.
BUCKETS = {
    "subject": "subjects",
    "problem": "problems",
    "idea": "ideas",
}

# ==============================================================================
# TOOL DECLARATIONS (sent to the model with every request)
# ==============================================================================

TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "find_content",
            "description": "Search existing subjects, problems and ideas by title.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Words to look for in content titles",
                    },
                    "type": {
                        "type": "string",
                        "enum": list(SEARCH_TYPES),
                        "description": "Kind of content to search; defaults to all",
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "create_content",
            "description": (
                "Create a subject, problem or idea. The first call returns a preview only. "
                "Call again with confirm set to true once the user has agreed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Title of the new content"},
                    "description": {
                        "type": "string",
                        "description": "Body text. Supports # headings, - lists, **bold**, *italics* and links",
                    },
                    "content_type": {
                        "type": "string",
                        "enum": list(CONTENT_TYPES),
                        "description": "Kind of content to create",
                    },
                    "parent_id": {
                        "type": "string",
                        "description": "Parent subject id for a problem, parent problem id for an idea",
                    },
                    "confirm": {
                        "type": "boolean",
                        "description": "Set to true only after the user approved the preview",
                    },
                },
                "required": ["title", "description", "content_type"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "edit_content",
            "description": (
                "Change the title and/or description of existing content. The first call returns "
                "a preview only. Call again with confirm set to true once the user has agreed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "content_id": {"type": "string", "description": "Id of the content to edit"},
                    "changes": {
                        "type": "object",
                        "properties": {
                            "title": {"type": "string"},
                            "description": {"type": "string"},
                        },
                        "description": "Only the fields to change",
                    },
                    "confirm": {
                        "type": "boolean",
                        "description": "Set to true only after the user approved the preview",
                    },
                },
                "required": ["content_id", "changes"],
            },
        },
    },
]


# ==============================================================================
# TYPE GUARDS
# ==============================================================================

def _require_str(args: Dict[str, Any], field: str, tool: str) -> str:
    value = args.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ToolArgumentError(f"{tool} requires '{field}' as a non-empty string")
    return value


def _optional_id(args: Dict[str, Any], field: str, tool: str) -> Optional[Any]:
    value = args.get(field)
    if value is None or value == "":
        return None
    # bool is an int subclass; an id of True is a model mistake.
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ToolArgumentError(f"{tool} expects '{field}' to be a string or integer id")
    return value


def _confirm_flag(args: Dict[str, Any], tool: str) -> bool:
    value = args.get("confirm", False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ToolArgumentError(f"{tool} expects 'confirm' to be true or false")
    return value


def check_find_content_args(args: Any) -> Dict[str, Any]:
    if not isinstance(args, dict):
        raise ToolArgumentError("find_content expects an object with 'query'")
    query = _require_str(args, "query", "find_content")
    content_type = args.get("type") or "all"
    if not isinstance(content_type, str) or content_type not in SEARCH_TYPES:
        raise ToolArgumentError(f"find_content 'type' must be one of: {', '.join(SEARCH_TYPES)}")
    return {"query": query, "type": content_type}


def check_create_content_args(args: Any) -> Dict[str, Any]:
    if not isinstance(args, dict):
        raise ToolArgumentError("create_content expects an object with 'title', 'description' and 'content_type'")
    title = _require_str(args, "title", "create_content")
    description = _require_str(args, "description", "create_content")
    content_type = _require_str(args, "content_type", "create_content")
    if content_type not in CONTENT_TYPES:
        raise ToolArgumentError(f"create_content 'content_type' must be one of: {', '.join(CONTENT_TYPES)}")
    parent_id = _optional_id(args, "parent_id", "create_content")
    if content_type == "problem" and parent_id is None:
        raise ToolArgumentError("create_content needs 'parent_id' (the subject id) to create a problem")
    if content_type == "idea" and parent_id is None:
        raise ToolArgumentError("create_content needs 'parent_id' (the problem id) to create an idea")
    return {
        "title": title,
        "description": description,
        "content_type": content_type,
        "parent_id": parent_id,
        "confirm": _confirm_flag(args, "create_content"),
    }


def check_edit_content_args(args: Any) -> Dict[str, Any]:
    if not isinstance(args, dict):
        raise ToolArgumentError("edit_content expects an object with 'content_id' and 'changes'")
    content_id = _optional_id(args, "content_id", "edit_content")
    if content_id is None:
        raise ToolArgumentError("edit_content requires 'content_id'")
    changes = args.get("changes")
    if not isinstance(changes, dict):
        raise ToolArgumentError("edit_content requires 'changes' as an object with 'title' and/or 'description'")

    cleaned: Dict[str, str] = {}
    for field in ("title", "description"):
        if field in changes and changes[field] is not None:
            if not isinstance(changes[field], str):
                raise ToolArgumentError(f"edit_content 'changes.{field}' must be a string")
            cleaned[field] = changes[field]
    if not cleaned:
        raise ToolArgumentError("edit_content 'changes' must include 'title' or 'description'")
    return {
        "content_id": content_id,
        "changes": cleaned,
        "confirm": _confirm_flag(args, "edit_content"),
    }


# ==============================================================================
# SEARCH RESPONSE NORMALISATION
# ==============================================================================
# The content service answers searches in more than one shape. Tried in this order:
#   1. flat list:           {"content": [...]}  (or a bare list)
#   2. categorized buckets: {"content": {"subjects": [...], "problems": [...], "ideas": [...]}}
#   3. anything else:       the first list-valued field found

def _item_summary(raw: Any, fallback_type: str) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    item: Dict[str, Any] = {
        "title": raw.get("title") or raw.get("name") or "",
        "type": raw.get("post_type") or raw.get("type") or fallback_type,
    }
    if raw.get("id") is not None:
        item["id"] = raw["id"]
    link = raw.get("link") or raw.get("url")
    if link:
        item["link"] = link
    return item


def _summaries(raw_items: List[Any], fallback_type: str) -> List[Dict[str, Any]]:
    items = []
    for raw in raw_items:
        summary = _item_summary(raw, fallback_type)
        if summary is not None:
            items.append(summary)
    return items


def _first_list(mapping: Dict[str, Any]) -> Optional[List[Any]]:
    for value in mapping.values():
        if isinstance(value, list):
            return value
    return None


def normalize_search_response(body: Any, requested_type: str = "all") -> List[Dict[str, Any]]:
    """Turn any supported search response shape into a list of {title, type, id?, link?}."""
    content = body.get("content") if isinstance(body, dict) else body

    # 1. flat list
    if isinstance(content, list):
        return _summaries(content, requested_type)

    # 2. categorized buckets
    if isinstance(content, dict) and any(bucket in content for bucket in BUCKETS.values()):
        wanted = CONTENT_TYPES if requested_type == "all" else (requested_type,)
        items: List[Dict[str, Any]] = []
        for content_type in wanted:
            bucket = content.get(BUCKETS[content_type])
            if isinstance(bucket, list):
                items.extend(_summaries(bucket, content_type))
        return items

    # 3. first list-valued field, looking inside "content" before the top level
    for candidate in (content, body):
        if isinstance(candidate, dict):
            found = _first_list(candidate)
            if found is not None:
                return _summaries(found, requested_type)
    return []


# ==============================================================================
# REGISTRY
# ==============================================================================

_CONFIRM_INSTRUCTIONS = (
    "Nothing has been saved yet. Show this preview to the user. If they approve, call "
    "{tool} again with exactly the same arguments plus \"confirm\": true."
)


class ToolRegistry:
    """
    Holds the tool declarations and builds per-caller executors.

    executors_for(user_token) returns {tool name: async executor(args) -> result}.
    """

    def __init__(self, content_client: ContentClient):
        self.content_client = content_client
        self.declarations = TOOL_DECLARATIONS

    @property
    def tool_names(self) -> List[str]:
        return [tool["function"]["name"] for tool in self.declarations]

    def executors_for(self, user_token: Optional[str]) -> Dict[str, ToolExecutor]:
        client = self.content_client

        async def find_content(args: Dict[str, Any]) -> Dict[str, Any]:
            checked = check_find_content_args(args)
            body = await client.search_posts(checked["query"], checked["type"], user_token=user_token)
            items = normalize_search_response(body, checked["type"])
            logger.info("find_content %r (%s): %d item(s)", checked["query"], checked["type"], len(items))
            return {"query": checked["query"], "type": checked["type"], "count": len(items), "items": items}

        async def create_content(args: Dict[str, Any]) -> Dict[str, Any]:
            checked = check_create_content_args(args)
            html = to_rich_html(checked["description"])
            if not checked["confirm"]:
                preview = {
                    "status": "preview",
                    "title": checked["title"],
                    "content_type": checked["content_type"],
                    "html": html,
                    "plain_text": html_to_plain_text(html),
                    "instructions": _CONFIRM_INSTRUCTIONS.format(tool="create_content"),
                }
                if checked["parent_id"] is not None:
                    preview["parent_id"] = checked["parent_id"]
                return preview

            post = await client.create_post(
                checked["title"],
                checked["content_type"],
                html,
                parent_id=checked["parent_id"],
                user_token=user_token,
            )
            logger.info("create_content: created %s %r", checked["content_type"], checked["title"])
            return {"status": "created", "post": post}

        async def edit_content(args: Dict[str, Any]) -> Dict[str, Any]:
            checked = check_edit_content_args(args)
            changes = checked["changes"]
            html = to_rich_html(changes["description"]) if "description" in changes else None
            if not checked["confirm"]:
                preview_changes: Dict[str, Any] = {}
                if "title" in changes:
                    preview_changes["title"] = changes["title"]
                if html is not None:
                    preview_changes["html"] = html
                    preview_changes["plain_text"] = html_to_plain_text(html)
                return {
                    "status": "preview",
                    "content_id": checked["content_id"],
                    "changes": preview_changes,
                    "instructions": _CONFIRM_INSTRUCTIONS.format(tool="edit_content"),
                }

            post = await client.update_post(
                checked["content_id"],
                title=changes.get("title"),
                body_html=html,
                user_token=user_token,
            )
            logger.info("edit_content: updated %s", checked["content_id"])
            return {"status": "updated", "post": post}

        return {
            "find_content": find_content,
            "create_content": create_content,
            "edit_content": edit_content,
        }
