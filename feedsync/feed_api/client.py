# feedsync/feed_api/client.py
#
#
# Imports
import json
from typing import Optional, Dict, Any, List, Protocol, TYPE_CHECKING
#
# 3rd-party Libraries
import httpx
from loguru import logger
#
# Local Imports
from .schemas import (
    Channel, ChannelListResponse, ChannelResponse, FileInfo, FileResponse,
    Message, MessageListResponse, MessageResponse, QueryParameters,
)
from .exceptions import APIConnectionError, APIRequestError, APIResponseError, AuthenticationError
from .utils import prepare_file_for_httpx, close_httpx_files

if TYPE_CHECKING:
    from feedsync.models import PendingFile
#
########################################################################################################################
#
# Functions:

class FeedGateway(Protocol):
    """The remote calls the sync layer depends on. FeedAPIClient is the production implementation."""

    async def retrieve_messages_in_channel(self, channel_id: str, params: QueryParameters) -> List[Message]: ...

    async def create_message(self, channel_id: str, message: Message) -> Message: ...

    async def delete_message(self, channel_id: str, message_id: str) -> Message: ...

    async def retrieve_channels(self, channel_type: str) -> List[Channel]: ...

    async def create_channel(self, channel: Channel) -> Channel: ...

    async def upload_file(self, pending_file: "PendingFile") -> FileInfo: ...

    async def delete_file(self, file_id: str) -> None: ...


class FeedAPIClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[List[tuple]] = None
    ) -> Dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{endpoint}"

        try:
            response = await client.request(method, endpoint, params=params, json=json_body, data=data, files=files)
            response.raise_for_status()  # Raises HTTPStatusError for 4xx/5xx
            if not response.content:
                return {}
            return response.json()
        except httpx.HTTPStatusError as e:
            error_detail = str(e)
            response_data = None
            try:
                response_data = e.response.json()
                if isinstance(response_data, dict):
                    meta = response_data.get("meta") or {}
                    if isinstance(meta, dict) and meta.get("error_message"):
                        error_detail = meta["error_message"]
                    elif isinstance(response_data.get("detail"), str):
                        error_detail = response_data["detail"]
            except ValueError:
                pass  # Body is not JSON; keep the generic detail

            if e.response.status_code == 401:
                raise AuthenticationError(f"Authentication failed: {error_detail}")
            elif e.response.status_code in (400, 422):
                raise APIRequestError(f"Validation Error: {error_detail}", response_data=response_data)
            raise APIResponseError(e.response.status_code, error_detail, response_data=response_data)
        except httpx.RequestError as e:  # Covers ConnectError, TimeoutException, etc.
            raise APIConnectionError(f"Connection error to {url}: {e}")
        except json.JSONDecodeError:
            raise APIResponseError(response.status_code, "Failed to decode JSON response",
                                   response_data={"raw_text": response.text})

    async def retrieve_messages_in_channel(self, channel_id: str, params: QueryParameters) -> List[Message]:
        response_dict = await self._request("GET", f"/channels/{channel_id}/messages",
                                            params=params.to_httpx_params())
        message_list = MessageListResponse(**response_dict)
        logger.debug(f"Retrieved {len(message_list.data)} messages for channel {channel_id} (params={dict(params)})")
        return message_list.data

    async def create_message(self, channel_id: str, message: Message) -> Message:
        response_dict = await self._request("POST", f"/channels/{channel_id}/messages",
                                            json_body=message.to_create_payload())
        return MessageResponse(**response_dict).data

    async def delete_message(self, channel_id: str, message_id: str) -> Message:
        response_dict = await self._request("DELETE", f"/channels/{channel_id}/messages/{message_id}")
        return MessageResponse(**response_dict).data

    async def retrieve_channels(self, channel_type: str) -> List[Channel]:
        response_dict = await self._request("GET", "/users/me/channels",
                                            params={"channel_types": channel_type, "include_annotations": "1"})
        return ChannelListResponse(**response_dict).data

    async def create_channel(self, channel: Channel) -> Channel:
        response_dict = await self._request("POST", "/channels",
                                            json_body=channel.model_dump(mode="json", exclude={"id"}, exclude_none=True))
        return ChannelResponse(**response_dict).data

    async def upload_file(self, pending_file: "PendingFile") -> FileInfo:
        httpx_files = prepare_file_for_httpx(pending_file.file_path, file_name=pending_file.name,
                                             mime_type=pending_file.mime_type)
        if httpx_files is None:
            raise APIRequestError(f"Pending file {pending_file.id} has no readable content at {pending_file.file_path}")
        form_data = {"type": pending_file.type, "public": str(pending_file.is_public).lower()}
        if pending_file.kind:
            form_data["kind"] = pending_file.kind
        try:
            response_dict = await self._request("POST", "/files", data=form_data, files=httpx_files)
        finally:
            close_httpx_files(httpx_files)
        return FileResponse(**response_dict).data

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"/files/{file_id}")

#
# End of client.py
########################################################################################################################
