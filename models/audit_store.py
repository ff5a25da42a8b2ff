# models/audit_store.py
import os
import json
import hmac
import hashlib
from typing import Any, Optional
from datetime import datetime, timezone
from flask import request, has_request_context, g
from sqlalchemy import select, asc
from models.base import session_scope
from models.schema import AuditLog

APP_SECRET = (os.getenv("AUDIT_HMAC_SECRET") or "secret-key").encode("utf-8")
ANONYMIZE_IP = os.getenv("AUDIT_ANONYMIZE_IP", "1") == "1"
SIGNING_KEY_ID = os.getenv("AUDIT_HMAC_KEY_ID", "k1")

_ALLOWED_EXTRA_KEYS = {"reason", "note", "provider", "amount", "currency",
                       "transaction_id", "event_type", "status", "totals", "count",
                       "checked", "first_bad_id"}


def _load_keyring() -> dict[str, bytes]:
    ring: dict[str, bytes] = {}
    # Optional ring for rotated keys
    cfg = os.getenv("AUDIT_HMAC_KEYRING", "")
    if cfg:
        for part in cfg.split(","):
            part = part.strip()
            if not part or "=" not in part:
                continue
            kid, sec = part.split("=", 1)
            ring[kid.strip()] = sec.strip().encode("utf-8")
    # Always include current key
    ring[SIGNING_KEY_ID] = APP_SECRET
    return ring


def _ts_to_payload_str(ts_val: Any) -> str:
    """Recreate the exact 'ts' string format used when hashing."""
    if isinstance(ts_val, datetime):
        if ts_val.tzinfo is None:
            ts_val = ts_val.replace(tzinfo=timezone.utc)
        ts_val = ts_val.astimezone(timezone.utc)
        return ts_val.isoformat(timespec="seconds").replace("+00:00", "Z")
    return str(ts_val)


def _payload(ts: str, actor, request_id, ip, method, path, action, target_type,
             target_id, outcome, status, extra, key_id) -> dict:
    return {
        "ts": ts, "actor": actor, "request_id": request_id,
        "ip": ip, "method": method, "path": path,
        "action": action, "target_type": target_type, "target_id": target_id,
        "outcome": outcome, "status": status,
        "extra": extra or {}, "key_id": key_id,
    }


def _compute_hash(prev_hash: str, payload: dict) -> str:
    s = prev_hash + json.dumps(payload, separators=(",", ":"),
                               sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _sign(h: str, key: bytes = APP_SECRET) -> str:
    return hmac.new(key, h.encode("utf-8"), hashlib.sha256).hexdigest()


def _anon_ip(ip: str | None) -> str | None:
    if not ip:
        return None
    if not ANONYMIZE_IP:
        return ip
    # Simple IPv4 /24 or IPv6 /48 truncation
    if ":" in ip:
        parts = ip.split(":")
        return ":".join(parts[:3]) + "::"
    quads = ip.split(".")
    return ".".join(quads[:3]) + ".0"


def _clean_extra(extra: Optional[dict[str, Any]]) -> dict:
    if not extra:
        return {}
    out = {}
    for k, v in extra.items():
        if k not in _ALLOWED_EXTRA_KEYS:
            continue
        if isinstance(v, str) and len(v) > 512:
            v = v[:512] + "…"
        out[k] = v
    return out


def audit(
    action: str,
    *,
    target_type: str | None = None,
    target_id: str | None = None,
    outcome: str | None = None,            # 'success'|'failure'
    status: int | None = None,
    extra: Optional[dict[str, Any]] = None,
    actor: Optional[str] = None
) -> None:
    ts = datetime.now(timezone.utc).replace(microsecond=0)
    ip = method = path = req_id = None
    if has_request_context():
        fwd = request.headers.get("X-Forwarded-For", "")
        ip = _anon_ip(fwd.split(",")[0].strip() or request.remote_addr)
        method = request.method
        path = request.path
        req_id = getattr(g, "request_id", None) or request.headers.get(
            "X-Request-ID")
    actor = actor or "system"
    clean = _clean_extra(extra)

    payload = _payload(_ts_to_payload_str(ts), actor, req_id, ip, method, path,
                       action, target_type, target_id, outcome, status, clean,
                       SIGNING_KEY_ID)

    with session_scope() as s:
        last = s.execute(select(AuditLog).order_by(
            AuditLog.id.desc()).limit(1)).scalars().first()
        prev = (last.hash or "") if last else ""
        h = _compute_hash(prev, payload)
        s.add(AuditLog(
            ts=ts, actor=actor, request_id=req_id, ip=ip,
            method=method, path=path,
            action=action, target_type=target_type, target_id=target_id,
            outcome=outcome, status=status, extra=clean,
            prev_hash=prev, hash=h, signature=_sign(h), key_id=SIGNING_KEY_ID,
        ))


def verify_chain(limit: Optional[int] = None) -> dict:
    """
    Return:
      {"ok": bool, "checked": int, "last_ok_id": int | None,
       "first_bad_id": int | None, "reason": str | None}
    """
    ring = _load_keyring()
    prev = ""
    checked = 0
    last_ok = None

    with session_scope() as s:
        rows = s.execute(select(AuditLog).order_by(
            asc(AuditLog.id))).scalars().all()
        if limit:
            rows = rows[: int(limit)]

        for r in rows:
            def bad(reason: str) -> dict:
                return {"ok": False, "checked": checked, "last_ok_id": last_ok,
                        "first_bad_id": r.id, "reason": reason}

            payload = _payload(_ts_to_payload_str(r.ts), r.actor, r.request_id, r.ip,
                               r.method, r.path, r.action, r.target_type, r.target_id,
                               r.outcome, r.status, r.extra, r.key_id)
            if (r.prev_hash or "") != prev:
                return bad("prev_hash_mismatch")
            exp_hash = _compute_hash(prev, payload)
            if r.hash != exp_hash:
                return bad("hash_mismatch")
            key = ring.get(r.key_id or SIGNING_KEY_ID)
            if not key:
                return bad(f"missing_key:{r.key_id}")
            if not hmac.compare_digest(r.signature or "", _sign(exp_hash, key)):
                return bad("signature_mismatch")

            # advance
            checked += 1
            last_ok = r.id
            prev = r.hash or ""

    return {"ok": True, "checked": checked, "last_ok_id": last_ok,
            "first_bad_id": None, "reason": None}


def list_audit(limit: int = 500, action: str | None = None) -> list[dict]:
    with session_scope() as s:
        stmt = select(AuditLog).order_by(AuditLog.id.desc()).limit(limit)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        rows = s.execute(stmt).scalars().all()
        return [
            {
                "id": r.id, "ts": r.ts, "actor": r.actor, "action": r.action,
                "target": f"{r.target_type}:{r.target_id}" if r.target_id else None,
                "outcome": r.outcome, "status": r.status, "extra": r.extra or {},
            }
            for r in rows
        ]
