from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from credstore.config import Settings
from credstore.logging import get_logger
from credstore.service.errors import (
    BadRequestError,
    DeviceConflictError,
    UnknownAccountError,
    UnknownDeviceError,
)
from credstore.service.session_cache import SessionMetadataCache
from credstore.service.tokens import is_expired, token_lifetime
from credstore.storage.errors import ConstraintViolation
from credstore.storage.models import Device, DeviceType, SessionToken

_PUSH_FIELDS = ("push_callback", "push_public_key", "push_auth_key")
_DEVICE_TYPES = frozenset(t.value for t in DeviceType)


@dataclass
class DeviceInfo:
    """Client-supplied device fields; ``None`` means "not supplied"."""

    id: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    push_callback: Optional[str] = None
    push_public_key: Optional[str] = None
    push_auth_key: Optional[str] = None

    def supplied(self) -> Dict[str, Optional[str]]:
        values = {}
        for name in ("name", "type") + _PUSH_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            # Empty push values clear the stored subscription
            values[name] = None if value == "" and name in _PUSH_FIELDS else value
        return values


def merge_session(device: Device, token: Optional[SessionToken]) -> Device:
    if token is None:
        return device
    return replace(
        device,
        last_access_time=token.last_access_time,
        ua_browser=token.ua_browser,
        ua_browser_version=token.ua_browser_version,
        ua_os=token.ua_os,
        ua_os_version=token.ua_os_version,
        ua_device_type=token.ua_device_type,
        location=token.location,
    )


class DeviceRegistry:
    """Devices bound one-to-one to session tokens."""

    def __init__(self, store, metadata: SessionMetadataCache, settings: Settings) -> None:
        self.store = store
        self.metadata = metadata
        self.settings = settings
        self.logger = get_logger(__name__)

    def _session_for(self, uid: str, session_token_id: str) -> SessionToken:
        token = self.store.get_token(session_token_id)
        if not isinstance(token, SessionToken) or token.uid != uid:
            raise UnknownDeviceError("Invalid session token")
        if is_expired(token, token_lifetime(token, self.settings)):
            raise UnknownDeviceError("Invalid session token")
        return token

    @staticmethod
    def _validate(info: DeviceInfo) -> None:
        if info.type is not None and info.type not in _DEVICE_TYPES:
            raise BadRequestError("invalid device type", detail={"type": info.type})

    async def create_device(self, uid: str, session_token_id: str, info: DeviceInfo) -> Device:
        self._validate(info)
        session = self._session_for(uid, session_token_id)
        if session.device_id:
            raise DeviceConflictError(session.device_id)
        fields = info.supplied()
        device = Device(
            id=info.id or uuid.uuid4().hex,
            uid=uid,
            session_token_id=session_token_id,
            **fields,
        )
        try:
            created = self.store.create_device(device)
        except ConstraintViolation as exc:
            if exc.field == "uid":
                raise UnknownAccountError() from exc
            raise DeviceConflictError(exc.detail.get("device_id") or device.id) from exc
        self.logger.info("device_created", uid=uid, device_id=created.id, device_type=created.type)
        return merge_session(created, session)

    async def update_device(self, uid: str, session_token_id: str, info: DeviceInfo) -> Device:
        self._validate(info)
        if not info.id:
            raise BadRequestError("device id is required")
        session = self._session_for(uid, session_token_id)
        if self.store.get_device(uid, info.id) is None:
            raise UnknownDeviceError()
        if session.device_id and session.device_id != info.id:
            raise DeviceConflictError(session.device_id)
        try:
            updated = self.store.update_device(
                uid, info.id, session_token_id=session_token_id, **info.supplied()
            )
        except ConstraintViolation as exc:
            raise DeviceConflictError(exc.detail.get("device_id") or info.id) from exc
        if updated is None:
            raise UnknownDeviceError()
        return merge_session(updated, session)

    async def delete_device(self, uid: str, device_id: str) -> None:
        if not self.store.delete_device(uid, device_id):
            raise UnknownDeviceError()
        self.logger.info("device_deleted", uid=uid, device_id=device_id)

    async def devices(self, uid: str) -> List[Device]:
        sessions = {t.token_id: t for t in await self.metadata.sessions(uid)}
        return [
            merge_session(device, sessions.get(device.session_token_id))
            for device in self.store.list_devices(uid)
        ]
