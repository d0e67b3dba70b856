from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from clinicrecords.logging import get_logger
from clinicrecords.storage.errors import ConstraintViolation
from clinicrecords.storage.models import Patient, Session, User, utcnow


class MemoryStore:
    """In-memory backing store for users, sessions and patients.

    Every read and write goes through ``_data_lock``. Records are copied on the
    way in and out so callers only change stored state through ``update_*``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.patients: Dict[str, Patient] = {}
        # Secondary indexes: normalized email -> user id, refresh token -> session id
        self._emails: Dict[str, str] = {}
        self._refresh_tokens: Dict[str, str] = {}
        # RLock so helper methods can be called with the lock already held
        self._data_lock = threading.RLock()

    @staticmethod
    def _email_key(email: str) -> str:
        return email.strip().lower()

    # -- users -------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email_key = self._email_key(user.email)
            if email_key in self._emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"user_id": user.id})
            self.users[user.id] = copy.deepcopy(user)
            self._emails[email_key] = user.id
            return copy.deepcopy(user)

    def update_user(self, user: User) -> User:
        with self._data_lock:
            existing = self.users.get(user.id)
            if existing is None:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            old_key = self._email_key(existing.email)
            new_key = self._email_key(user.email)
            if new_key != old_key:
                if new_key in self._emails:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self._emails.pop(old_key, None)
                self._emails[new_key] = user.id
            self.users[user.id] = copy.deepcopy(user)
            return copy.deepcopy(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if user is None:
                return False
            self._emails.pop(self._email_key(user.email), None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self._drop_session(sess_id)
            return True

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._emails.get(self._email_key(email))
            if user_id is None:
                return None
            return copy.deepcopy(self.users[user_id])

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": session.id})
            if session.refresh_token and session.refresh_token in self._refresh_tokens:
                raise ConstraintViolation("refresh token already in use", {"field": "refresh_token"})
            self.sessions[session.id] = copy.deepcopy(session)
            if session.refresh_token:
                self._refresh_tokens[session.refresh_token] = session.id
            return copy.deepcopy(session)

    def update_session(self, session: Session) -> Session:
        with self._data_lock:
            existing = self.sessions.get(session.id)
            if existing is None:
                raise ConstraintViolation("session not found", {"session_id": session.id})
            if session.refresh_token != existing.refresh_token:
                if session.refresh_token and session.refresh_token in self._refresh_tokens:
                    raise ConstraintViolation(
                        "refresh token already in use", {"field": "refresh_token"}
                    )
                if existing.refresh_token:
                    self._refresh_tokens.pop(existing.refresh_token, None)
                if session.refresh_token:
                    self._refresh_tokens[session.refresh_token] = session.id
            self.sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def _drop_session(self, session_id: str) -> bool:
        sess = self.sessions.pop(session_id, None)
        if sess is None:
            return False
        if sess.refresh_token:
            self._refresh_tokens.pop(sess.refresh_token, None)
        return True

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self._drop_session(session_id)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def get_session_by_refresh_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._refresh_tokens.get(token)
            if session_id is None:
                return None
            return copy.deepcopy(self.sessions[session_id])

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                self._drop_session(sid)
        if expired:
            self.logger.debug("expired_sessions_deleted", count=len(expired))
        return len(expired)

    # -- patients ----------------------------------------------------------

    def create_patient(self, patient: Patient) -> Patient:
        with self._data_lock:
            if patient.id in self.patients:
                raise ConstraintViolation("patient already exists", {"patient_id": patient.id})
            self.patients[patient.id] = copy.deepcopy(patient)
            return copy.deepcopy(patient)

    def update_patient(self, patient: Patient) -> Patient:
        with self._data_lock:
            if patient.id not in self.patients:
                raise ConstraintViolation("patient not found", {"patient_id": patient.id})
            self.patients[patient.id] = copy.deepcopy(patient)
            return copy.deepcopy(patient)

    def delete_patient(self, patient_id: str) -> bool:
        with self._data_lock:
            return self.patients.pop(patient_id, None) is not None

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        with self._data_lock:
            patient = self.patients.get(patient_id)
            return copy.deepcopy(patient) if patient else None

    def list_patients_paginated(
        self, page: int, page_size: int, search: str = ""
    ) -> Tuple[List[Patient], int]:
        needle = (search or "").strip().lower()
        with self._data_lock:
            matches = [
                p
                for p in self.patients.values()
                if not needle or needle in p.full_name().lower()
            ]
            # Stable sort keeps insertion order for equal timestamps
            matches.sort(key=lambda p: p.created_at)
            total = len(matches)
            start = (page - 1) * page_size
            window = matches[start : start + page_size] if start < total else []
            return [copy.deepcopy(p) for p in window], total


__all__ = ["MemoryStore"]
