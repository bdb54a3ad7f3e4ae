from __future__ import annotations

from flask import request

from payfesa.extensions import db
from payfesa.models import User
from payfesa.utils.jwt_utils import user_id_from_header


def current_user() -> User | None:
    uid = user_id_from_header(request.headers.get("Authorization", ""))
    if uid is None:
        return None
    return db.session.get(User, uid)


def is_admin(u: User | None) -> bool:
    if not u:
        return False
    return (u.role or "").strip().lower() == "admin"
