"""Remote store gateway contracts and their REST implementation.

The core never talks to the remote store directly; it consumes the three
Protocols below. HttpStoreGateway implements all of them against a
PostgREST-style endpoint (table routes, `column=eq.value` filters).
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from inquiry_sync.schemas import (
    ApplicantDetails,
    Inquiry,
    InquiryCreate,
    InquiryStatus,
    Message,
    PetAvailability,
)
from inquiry_sync.utils import utc_now_iso

logger = logging.getLogger(__name__)

INQUIRY_COLUMNS = (
    "id,shelter_id,applicant_id,pet_id,applicant_name,email,phone,status,message,created_at,"
    "pets(name),profiles!applicant_id(user_data,location,bio)"
)
UNKNOWN_PET_NAME = "Unknown"


class GatewayError(Exception):
    """A remote store call failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DuplicateInquiryError(GatewayError):
    """The remote store already holds an inquiry for this applicant and pet."""


class InquiryStoreGateway(Protocol):
    async def fetch_inquiries(self, account_id: str) -> list[Inquiry]: ...

    async def create_inquiry(self, inquiry: InquiryCreate) -> None: ...

    async def set_inquiry_status(self, inquiry_id: str, status: InquiryStatus) -> None: ...


class MessageStoreGateway(Protocol):
    async def fetch_messages(self, inquiry_id: str) -> list[Message]: ...

    async def send_message(self, inquiry_id: str, text: str) -> Message: ...

    async def mark_messages_read(self, inquiry_id: str, account_id: str) -> None: ...


class PetStoreGateway(Protocol):
    async def set_pet_availability(self, pet_id: str, status: PetAvailability) -> None: ...


def _inquiry_from_row(row: dict[str, Any], unread_ids: set[str]) -> Inquiry:
    pet = row.get("pets") or {}
    profile = row.get("profiles")
    details = None
    if profile:
        user_data = profile.get("user_data") or {}
        details = ApplicantDetails(
            location=profile.get("location"),
            bio=profile.get("bio"),
            household=user_data.get("household"),
            availability=user_data.get("availability"),
        )
    return Inquiry(
        id=str(row["id"]),
        shelter_id=str(row["shelter_id"]),
        pet_id=str(row["pet_id"]),
        pet_name=pet.get("name") or UNKNOWN_PET_NAME,
        applicant_id=str(row["applicant_id"]) if row.get("applicant_id") else None,
        applicant_name=row.get("applicant_name") or "",
        email=row.get("email") or "",
        phone=row.get("phone") or "",
        message=row.get("message") or "",
        date=row["created_at"],
        status=row["status"],
        has_unread_messages=str(row["id"]) in unread_ids,
        applicant_details=details,
    )


def _expect_rows(body: Any, what: str) -> list[dict[str, Any]]:
    if not isinstance(body, list):
        raise GatewayError(f"expected a list of {what} rows, got {type(body).__name__}")
    return [row for row in body if isinstance(row, dict)]


def _message_from_row(row: dict[str, Any]) -> Message:
    return Message(
        id=str(row["id"]),
        inquiry_id=str(row["inquiry_id"]),
        sender_id=str(row["sender_id"]),
        content=row.get("content") or "",
        created_at=row["created_at"],
        is_read=bool(row.get("is_read")),
    )


class HttpStoreGateway:
    """
    Inquiry, message and pet gateway over the remote store's REST API.

    One instance is bound to one signed-in account: messages are sent as
    `account_id` and unread flags are computed from its point of view.
    """

    def __init__(
        self,
        base_url: str,
        account_id: str,
        api_key: Optional[str] = None,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_id = account_id
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            logger.debug(f"{method} {path} -> {status_code}: {e.response.text[:200]}")
            raise GatewayError(f"{method} {path} failed with status {status_code}", status_code) from e
        except httpx.RequestError as e:
            raise GatewayError(f"{method} {path} failed: {type(e).__name__}") from e
        return response

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"{method} {path} returned an undecodable body", response.status_code
            ) from e

    # -------------------------------------------------------------------------
    # Inquiries
    # -------------------------------------------------------------------------

    async def fetch_inquiries(self, account_id: str) -> list[Inquiry]:
        """
        Fetch every inquiry visible to the account, newest first.

        Row visibility is enforced by the remote store. has_unread_messages is
        set when the inquiry has an unread message authored by someone else.
        """
        rows = _expect_rows(await self._request_json(
            "GET",
            "/inquiries",
            params={"select": INQUIRY_COLUMNS, "order": "created_at.desc"},
        ), "inquiry")

        unread_rows = _expect_rows(await self._request_json(
            "GET",
            "/inquiry_messages",
            params={
                "select": "inquiry_id",
                "is_read": "eq.false",
                "sender_id": f"neq.{account_id}",
            },
        ), "message")
        unread_ids = {str(row["inquiry_id"]) for row in unread_rows if row.get("inquiry_id") is not None}

        inquiries = []
        for row in rows:
            try:
                inquiries.append(_inquiry_from_row(row, unread_ids))
            except (KeyError, ValidationError) as e:
                logger.warning(f"Skipping malformed inquiry row {row.get('id')}: {e}")
        logger.debug(f"Fetched {len(inquiries)} inquiries, {len(unread_ids)} with unread messages")
        return inquiries

    async def create_inquiry(self, inquiry: InquiryCreate) -> None:
        payload = {
            "shelter_id": inquiry.shelter_id,
            "pet_id": inquiry.pet_id,
            "applicant_id": inquiry.applicant_id,
            "applicant_name": inquiry.applicant_name,
            "email": inquiry.email,
            "phone": inquiry.phone,
            "message": inquiry.message,
            "status": InquiryStatus.NEW.value,
            "created_at": utc_now_iso(),
        }
        try:
            await self._request("POST", "/inquiries", json=payload)
        except GatewayError as e:
            if e.status_code == 409:
                raise DuplicateInquiryError(
                    "An inquiry for this pet has already been submitted.", 409
                ) from e
            raise
        logger.info(f"Inquiry created for pet {inquiry.pet_id}")

    async def set_inquiry_status(self, inquiry_id: str, status: InquiryStatus) -> None:
        await self._request(
            "PATCH",
            "/inquiries",
            params={"id": f"eq.{inquiry_id}"},
            json={"status": status.value},
        )

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def fetch_messages(self, inquiry_id: str) -> list[Message]:
        """Persisted messages of one thread, oldest first. Malformed rows are skipped."""
        rows = _expect_rows(await self._request_json(
            "GET",
            "/inquiry_messages",
            params={
                "select": "*",
                "inquiry_id": f"eq.{inquiry_id}",
                "order": "created_at.asc",
            },
        ), "message")
        messages = []
        for row in rows:
            try:
                messages.append(_message_from_row(row))
            except (KeyError, ValidationError) as e:
                logger.warning(f"Skipping malformed message row {row.get('id')} in inquiry {inquiry_id}: {e}")
        return messages

    async def send_message(self, inquiry_id: str, text: str) -> Message:
        body = await self._request_json(
            "POST",
            "/inquiry_messages",
            headers={"Prefer": "return=representation"},
            json={
                "inquiry_id": inquiry_id,
                "sender_id": self.account_id,
                "content": text,
                "created_at": utc_now_iso(),
            },
        )
        row = body[0] if isinstance(body, list) and body else body
        if not row or not isinstance(row, dict):
            raise GatewayError(f"send to inquiry {inquiry_id} returned no record")
        try:
            return _message_from_row(row)
        except (KeyError, ValidationError) as e:
            raise GatewayError(f"send to inquiry {inquiry_id} returned a malformed record") from e

    async def mark_messages_read(self, inquiry_id: str, account_id: str) -> None:
        """Flag the other party's messages in the thread as read."""
        await self._request(
            "PATCH",
            "/inquiry_messages",
            params={"inquiry_id": f"eq.{inquiry_id}", "sender_id": f"neq.{account_id}"},
            json={"is_read": True},
        )

    # -------------------------------------------------------------------------
    # Pets
    # -------------------------------------------------------------------------

    async def set_pet_availability(self, pet_id: str, status: PetAvailability) -> None:
        await self._request(
            "PATCH",
            "/pets",
            params={"id": f"eq.{pet_id}"},
            json={"adoption_status": status.value},
        )
