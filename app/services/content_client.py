"""
CONTENT SERVICE CLIENT
======================

Async HTTP client for the content service that stores subjects, problems and ideas.
Used by the content tools (app.services.tools); it knows nothing about the model.

ENDPOINTS:
  GET  /posts?type=&q[title_cont]=    search         -> {"content": [...] | {"subjects": [...], ...}}
  POST /posts                         create         -> {"content": {"post": {...}}}
  PUT  /posts/{id}/api_update         partial update -> {"content": {"post": {...}}}

Every request carries the service bearer token; the end user's token is forwarded as
X-User-Token when we have one. Non-success responses raise UpstreamError with the
upstream status. Only the search is retried on transport errors: creating or updating
twice would not be harmless.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from app.errors import UpstreamError
from app.utils.retry import with_retry
from config import CONTENT_API_TOKEN, CONTENT_API_URL, HTTP_TIMEOUT


logger = logging.getLogger("SAGE")

# Which field links a new post to its parent. Subjects are top level.
PARENT_FIELDS = {
    "problem": "subject_id",
    "idea": "problem_id",
}


class ContentClient:
    """Thin async wrapper over the content service REST API."""

    def __init__(
        self,
        base_url: str = CONTENT_API_URL,
        service_token: str = CONTENT_API_TOKEN,
        timeout: float = HTTP_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.service_token = service_token
        # Tests pass a client built on httpx.MockTransport.
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, user_token: Optional[str]) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.service_token}",
            "Content-Type": "application/json",
        }
        if user_token:
            headers["X-User-Token"] = user_token
        return headers

    async def _send(self, method: str, url: str, action: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Content service timed out while trying to {action}", 504, service="content") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Content service unreachable while trying to {action}: {e}", 502, service="content") from e

        if not response.is_success:
            logger.warning("Content service returned %s for %s %s", response.status_code, method, url)
            raise UpstreamError(
                f"Content service failed to {action} (HTTP {response.status_code})",
                response.status_code,
                service="content",
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Content service sent an unreadable response while trying to {action}", 502, service="content") from e

    # ------------------------------------------------------------------------------
    # READ
    # ------------------------------------------------------------------------------

    async def search_posts(self, query: str, content_type: str = "all", user_token: Optional[str] = None) -> Dict[str, Any]:
        """Search posts by title. Returns the raw response body; shape normalisation is the caller's job."""
        params = {"type": content_type, "q[title_cont]": query}
        headers = self._headers(user_token)

        async def _get():
            return await self._client.get("/posts", params=params, headers=headers)

        # Retry only the transport; an HTTP error status is an answer, not a blip.
        try:
            response = await with_retry(_get, max_retries=3, initial_delay=0.5, retry_on=(httpx.TransportError,))
        except httpx.TimeoutException as e:
            raise UpstreamError("Content service timed out while trying to search content", 504, service="content") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Content service unreachable while trying to search content: {e}", 502, service="content") from e

        if not response.is_success:
            logger.warning("Content search returned %s for query %r", response.status_code, query)
            raise UpstreamError(
                f"Content service failed to search content (HTTP {response.status_code})",
                response.status_code,
                service="content",
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError("Content service sent an unreadable search response", 502, service="content") from e

    # ------------------------------------------------------------------------------
    # WRITE
    # ------------------------------------------------------------------------------

    async def create_post(
        self,
        title: str,
        post_type: str,
        body_html: str,
        parent_id: Optional[Any] = None,
        user_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a subject, problem or idea and return the created post."""
        post: Dict[str, Any] = {
            "title": title,
            "post_type": post_type,
            "content": {"body": body_html},
        }
        parent_field = PARENT_FIELDS.get(post_type)
        if parent_field and parent_id is not None:
            post[parent_field] = parent_id

        body = await self._send(
            "POST", "/posts", "create content",
            json={"post": post}, headers=self._headers(user_token),
        )
        return _extract_post(body)

    async def update_post(
        self,
        post_id: Any,
        title: Optional[str] = None,
        body_html: Optional[str] = None,
        user_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Update only the supplied fields of an existing post and return it."""
        post: Dict[str, Any] = {}
        if title is not None:
            post["title"] = title
        if body_html is not None:
            post["content"] = {"body": body_html}

        body = await self._send(
            "PUT", f"/posts/{post_id}/api_update", "update content",
            json={"post": post}, headers=self._headers(user_token),
        )
        return _extract_post(body)


def _extract_post(body: Dict[str, Any]) -> Dict[str, Any]:
    """Pull the post out of {"content": {"post": {...}}}; fall back to the whole body."""
    content = body.get("content") if isinstance(body, dict) else None
    if isinstance(content, dict) and isinstance(content.get("post"), dict):
        return content["post"]
    return body
