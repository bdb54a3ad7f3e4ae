from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import requests
from flask import current_app

from payfesa.extensions import db
from payfesa.models.notification import Notification


def queue_in_app(user_id: int, title: str, message: str, meta: Optional[Dict[str, Any]] = None) -> Notification:
    n = Notification(
        user_id=user_id,
        channel="in_app",
        title=title[:160] if title else "",
        message=message or "",
        status="queued",
        meta=json.dumps(meta or {}, default=str),
    )
    db.session.add(n)
    return n


def mark_sent(n: Notification) -> None:
    n.status = "sent"
    n.sent_at = datetime.utcnow()
    db.session.add(n)


def mark_failed(n: Notification) -> None:
    n.status = "failed"
    db.session.add(n)


def _push(user_ids: List[int], title: str, body: str, data: Dict[str, Any]) -> bool:
    url = (current_app.config.get("PUSH_NOTIFY_URL") or "").strip()
    if not url:
        return False
    timeout = int(current_app.config.get("PUSH_NOTIFY_TIMEOUT_SECONDS") or 10)
    r = requests.post(url, json={"userIds": user_ids, "title": title, "body": body, "data": data}, timeout=timeout)
    return 200 <= r.status_code < 300


def notify_users(user_ids: Iterable[int], title: str, body: str, data: Optional[Dict[str, Any]] = None) -> int:
    """Fire-and-forget: queue in-app rows and relay to push. Never raises.

    Returns how many in-app rows were written.
    """
    ids = [int(u) for u in user_ids if u]
    if not ids:
        return 0
    data = data or {}

    written = 0
    try:
        rows = [queue_in_app(uid, title, body, data) for uid in ids]
        db.session.commit()
        written = len(rows)
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("notification queue failed users=%s title=%s error=%s", ids, title, e)
        return 0

    if not (current_app.config.get("PUSH_NOTIFY_URL") or "").strip():
        return written

    try:
        delivered = _push(ids, title, body, data)
    except Exception as e:
        current_app.logger.warning("push relay failed users=%s title=%s error=%s", ids, title, e)
        delivered = False
    try:
        for n in rows:
            if delivered:
                mark_sent(n)
            else:
                mark_failed(n)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("notification status update failed users=%s error=%s", ids, e)
    return written
