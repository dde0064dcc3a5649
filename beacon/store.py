import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .envelope import BeaconMessage

log = logging.getLogger(__name__)

SCHEMA_VERSION = "3"

DIRECTION_INBOUND = "inbound"
DIRECTION_OUTBOUND = "outbound"

ROLE_USER = "user"
ROLE_BEACON = "beacon"
ROLE_SYSTEM = "system"

DELIVERY_QUEUED = "queued"
DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"
DELIVERY_CANCELED = "canceled"
TERMINAL_STATUSES = {DELIVERY_SENT, DELIVERY_FAILED, DELIVERY_CANCELED}

_TABLES = ("message_delivery", "messages", "actions", "identity_map", "conversation_state", "nicknames", "user_wallets")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
  id TEXT PRIMARY KEY,
  conversation_id TEXT NOT NULL,
  reply_to_message_id TEXT NULL REFERENCES messages(id) ON DELETE SET NULL,
  direction TEXT NOT NULL CHECK (direction IN ('inbound','outbound')),
  role TEXT NOT NULL CHECK (role IN ('user','beacon','system')),
  user_id TEXT NULL,
  provider_message_id TEXT NULL,
  content_json TEXT NOT NULL,
  metadata_json TEXT NULL,
  created_at INTEGER NOT NULL DEFAULT (strftime('%s','now'))
);
CREATE INDEX IF NOT EXISTS idx_messages_conv_time ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_reply_to ON messages(reply_to_message_id);
CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_messages_user ON messages(user_id);
CREATE INDEX IF NOT EXISTS idx_messages_provider ON messages(provider_message_id);

CREATE TABLE IF NOT EXISTS message_delivery (
  id TEXT PRIMARY KEY,
  message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
  channel TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('queued','sent','failed','canceled')),
  attempts INTEGER NOT NULL DEFAULT 0,
  provider_message_id TEXT NULL,
  error_code TEXT NULL,
  error_message TEXT NULL,
  queued_at INTEGER NULL,
  sent_at INTEGER NULL,
  failed_at INTEGER NULL,
  canceled_at INTEGER NULL,
  updated_at INTEGER NOT NULL DEFAULT (strftime('%s','now'))
);
CREATE INDEX IF NOT EXISTS idx_delivery_status ON message_delivery(status);
CREATE INDEX IF NOT EXISTS idx_delivery_channel_status ON message_delivery(channel, status);
CREATE INDEX IF NOT EXISTS idx_delivery_updated ON message_delivery(updated_at);
CREATE INDEX IF NOT EXISTS idx_delivery_provider ON message_delivery(provider_message_id);

CREATE TABLE IF NOT EXISTS actions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  beacon_id TEXT NOT NULL,
  created_at INTEGER DEFAULT (strftime('%s','now')),
  type TEXT NOT NULL,
  status TEXT NULL,
  payload_json TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_actions_beacon_time ON actions(beacon_id, created_at);

CREATE TABLE IF NOT EXISTS identity_map (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  gateway_type TEXT NOT NULL,
  gateway_id TEXT NOT NULL,
  gateway_user TEXT NOT NULL,
  user_id TEXT NOT NULL,
  brain_ref TEXT NULL,
  identity_ref TEXT NULL,
  created_at INTEGER NOT NULL DEFAULT (strftime('%s','now')),
  UNIQUE (gateway_type, gateway_id, gateway_user)
);
CREATE INDEX IF NOT EXISTS idx_identity_user ON identity_map(user_id);

CREATE TABLE IF NOT EXISTS conversation_state (
  conversation_id TEXT PRIMARY KEY,
  summary TEXT NOT NULL,
  message_count INTEGER NOT NULL DEFAULT 0,
  updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS nicknames (
  user_id TEXT NOT NULL,
  nickname TEXT NOT NULL,
  ln_address TEXT NOT NULL,
  created_at INTEGER NOT NULL DEFAULT (strftime('%s','now')),
  PRIMARY KEY (user_id, nickname)
);

CREATE TABLE IF NOT EXISTS user_wallets (
  user_id TEXT PRIMARY KEY,
  ln_address TEXT NULL,
  created_at INTEGER NOT NULL DEFAULT (strftime('%s','now'))
);
"""


def _now() -> int:
    return int(time.time())


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_json(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _dump_raw(payload: Any) -> Any:
    """Keep provider payloads that are already JSON, wrap anything else."""
    if payload is None or isinstance(payload, (dict, list)):
        return payload
    text = str(payload)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text}


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    reply_to_message_id: Optional[str]
    direction: str
    role: str
    user_id: Optional[str]
    content: Dict[str, Any]
    metadata: Dict[str, Any]
    created_at: int

    @property
    def text(self) -> str:
        return str((self.content or {}).get("text") or "")

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StoredMessage":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            reply_to_message_id=row["reply_to_message_id"],
            direction=row["direction"],
            role=row["role"],
            user_id=row["user_id"],
            content=_parse_json(row["content_json"]) or {},
            metadata=_parse_json(row["metadata_json"]) or {},
            created_at=int(row["created_at"]),
        )


@dataclass
class DeliveryRecord:
    id: str
    message_id: str
    channel: str
    status: str
    attempts: int
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    queued_at: Optional[int] = None
    sent_at: Optional[int] = None
    failed_at: Optional[int] = None
    canceled_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DeliveryRecord":
        return cls(**{key: row[key] for key in row.keys()})


@dataclass
class ConversationState:
    conversation_id: str
    summary: str
    message_count: int
    updated_at: int


@dataclass
class RecentConversation:
    conversation_id: str
    messages: List[StoredMessage] = field(default_factory=list)


@dataclass
class IdentityLink:
    user_id: str
    brain_ref: Optional[str] = None
    identity_ref: Optional[str] = None


@dataclass
class GatewayLink:
    gateway_type: str
    gateway_id: str
    gateway_user: str


class BeaconStore:
    """SQLite-backed record of messages, deliveries and identity mappings."""

    def __init__(self, path: str = "data/beacon.sqlite"):
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON")
        if path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self._migrate()

    def close(self) -> None:
        self.conn.close()

    # ----- schema -----
    def _schema_version(self) -> Optional[str]:
        try:
            row = self.conn.execute("SELECT v FROM _meta WHERE k='schema_version'").fetchone()
        except sqlite3.OperationalError:
            return None
        return row["v"] if row else None

    def _migrate(self) -> None:
        self.conn.execute("CREATE TABLE IF NOT EXISTS _meta (k TEXT PRIMARY KEY, v TEXT NOT NULL)")
        current = self._schema_version()
        if current != SCHEMA_VERSION:
            if current is not None:
                log.warning("Schema version %s != %s; rebuilding tables", current, SCHEMA_VERSION)
            self.conn.execute("PRAGMA foreign_keys=OFF")
            for table in _TABLES:
                self.conn.execute(f"DROP TABLE IF EXISTS {table}")
            self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(_SCHEMA)
        with self.conn:
            self.conn.execute(
                "INSERT INTO _meta(k, v) VALUES('schema_version', ?) "
                "ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (SCHEMA_VERSION,),
            )

    # ----- messages -----
    def record_inbound(self, msg: BeaconMessage) -> str:
        message_id = _new_id()
        content = {
            "text": msg.extract_text(),
            "from": msg.source.sender or None,
            "providerMessageId": msg.source.message_id,
        }
        metadata = {
            "gateway": msg.source.gateway.to_dict(),
            "source": _dump_raw(msg.source.message_data),
            "meta": {k: v for k, v in msg.meta.items() if k != "ctx"},
            "hasMedia": bool(msg.source.has_media),
            "beaconId": msg.beacon_id,
        }
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO messages(
                  id, conversation_id, reply_to_message_id, direction, role,
                  user_id, provider_message_id, content_json, metadata_json, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    message_id,
                    msg.conversation_id,
                    msg.meta.get("reply_to_message_id"),
                    DIRECTION_INBOUND,
                    ROLE_USER,
                    msg.user_id,
                    msg.source.message_id,
                    json.dumps(content, ensure_ascii=False),
                    json.dumps(metadata, ensure_ascii=False, default=str),
                    _now(),
                ),
            )
        return message_id

    def create_outbound(
        self,
        *,
        conversation_id: str,
        content: Dict[str, Any],
        channel: str,
        parent_message_id: Optional[str] = None,
        role: str = ROLE_BEACON,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, str]:
        message_id = _new_id()
        delivery_id = _new_id()
        now = _now()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO messages(
                  id, conversation_id, reply_to_message_id, direction, role,
                  user_id, content_json, metadata_json, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?)
                """,
                (
                    message_id,
                    conversation_id,
                    parent_message_id,
                    DIRECTION_OUTBOUND,
                    role,
                    user_id,
                    json.dumps(content or {}, ensure_ascii=False, default=str),
                    json.dumps(metadata or {}, ensure_ascii=False, default=str),
                    now,
                ),
            )
            self.conn.execute(
                """
                INSERT INTO message_delivery(id, message_id, channel, status, attempts, queued_at, updated_at)
                VALUES (?,?,?,?,1,?,?)
                """,
                (delivery_id, message_id, channel, DELIVERY_QUEUED, now, now),
            )
        return message_id, delivery_id

    def get_message(self, message_id: str) -> Optional[StoredMessage]:
        row = self.conn.execute("SELECT * FROM messages WHERE id=?", (message_id,)).fetchone()
        return StoredMessage.from_row(row) if row else None

    def get_replies(self, message_id: str) -> List[StoredMessage]:
        rows = self.conn.execute(
            "SELECT * FROM messages WHERE reply_to_message_id=? ORDER BY created_at ASC, rowid ASC",
            (message_id,),
        ).fetchall()
        return [StoredMessage.from_row(row) for row in rows]

    def get_conversation_messages(
        self,
        conversation_id: str,
        limit: int = 100,
        *,
        before: Optional[int] = None,
        after: Optional[int] = None,
        newest: bool = False,
    ) -> List[StoredMessage]:
        """Messages oldest first. With ``newest`` the limit keeps the latest ones instead."""
        where = "conversation_id = ?"
        params: List[Any] = [conversation_id]
        if before:
            where += " AND created_at < ?"
            params.append(before)
        if after:
            where += " AND created_at > ?"
            params.append(after)
        params.append(limit)
        order = "DESC" if newest else "ASC"
        rows = self.conn.execute(
            f"SELECT * FROM messages WHERE {where} ORDER BY created_at {order}, rowid {order} LIMIT ?",
            params,
        ).fetchall()
        messages = [StoredMessage.from_row(row) for row in rows]
        if newest:
            messages.reverse()
        return messages

    def conversation_message_count(self, conversation_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(1) AS c FROM messages WHERE conversation_id=?", (conversation_id,)
        ).fetchone()
        return int(row["c"] or 0)

    def find_message_by_provider_id(
        self, provider_message_id: str, *, user_id: Optional[str], gateway_type: Optional[str] = None
    ) -> Optional[str]:
        """Resolve a transport message id within one user's own messages.

        Provider ids are only unique per chat, so the lookup never crosses users.
        """
        if not provider_message_id or not user_id:
            return None
        where = "provider_message_id=? AND user_id=?"
        params: List[Any] = [provider_message_id, user_id]
        if gateway_type:
            where += " AND json_extract(metadata_json, '$.gateway.type')=?"
            params.append(gateway_type)
        row = self.conn.execute(
            f"SELECT id FROM messages WHERE {where} ORDER BY created_at DESC, rowid DESC LIMIT 1",
            params,
        ).fetchone()
        if row:
            return row["id"]
        where = "d.provider_message_id=? AND m.user_id=?"
        params = [provider_message_id, user_id]
        if gateway_type:
            where += " AND d.channel=?"
            params.append(gateway_type)
        row = self.conn.execute(
            f"""
            SELECT d.message_id FROM message_delivery d
            JOIN messages m ON m.id = d.message_id
            WHERE {where}
            ORDER BY d.updated_at DESC LIMIT 1
            """,
            params,
        ).fetchone()
        return row["message_id"] if row else None

    def recent_conversations(self, user_id: str, limit: int = 5) -> List[RecentConversation]:
        conv_rows = self.conn.execute(
            """
            SELECT conversation_id, MAX(created_at) AS last_time, MAX(rowid) AS last_row
            FROM messages
            WHERE user_id = ?
            GROUP BY conversation_id
            ORDER BY last_time DESC, last_row DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
        results: List[RecentConversation] = []
        for row in conv_rows:
            conversation_id = str(row["conversation_id"])
            msgs = self.conn.execute(
                "SELECT * FROM messages WHERE conversation_id=? ORDER BY created_at ASC, rowid ASC",
                (conversation_id,),
            ).fetchall()
            results.append(
                RecentConversation(
                    conversation_id=conversation_id,
                    messages=[StoredMessage.from_row(m) for m in msgs],
                )
            )
        return results

    # ----- deliveries -----
    def transition_delivery(
        self,
        delivery_id: str,
        status: str,
        *,
        provider_message_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Move a queued delivery to a terminal status. Returns False if nothing changed."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal delivery status: {status}")
        now = _now()
        cols = ["status = ?", "updated_at = ?", f"{status}_at = ?"]
        vals: List[Any] = [status, now, now]
        if provider_message_id:
            cols.append("provider_message_id = ?")
            vals.append(provider_message_id)
        if error_code:
            cols.append("error_code = ?")
            vals.append(error_code)
        if error_message:
            cols.append("error_message = ?")
            vals.append(error_message)
        with self.conn:
            cur = self.conn.execute(
                f"UPDATE message_delivery SET {', '.join(cols)} WHERE id = ? AND status = ?",
                (*vals, delivery_id, DELIVERY_QUEUED),
            )
        return cur.rowcount == 1

    def get_delivery(self, delivery_id: str) -> Optional[DeliveryRecord]:
        row = self.conn.execute("SELECT * FROM message_delivery WHERE id=?", (delivery_id,)).fetchone()
        return DeliveryRecord.from_row(row) if row else None

    def list_deliveries(self, status: str, channel: Optional[str] = None) -> List[DeliveryRecord]:
        if channel:
            rows = self.conn.execute(
                "SELECT * FROM message_delivery WHERE status=? AND channel=? ORDER BY updated_at ASC",
                (status, channel),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM message_delivery WHERE status=? ORDER BY updated_at ASC", (status,)
            ).fetchall()
        return [DeliveryRecord.from_row(row) for row in rows]

    # ----- conversation state -----
    def get_conversation_state(self, conversation_id: str) -> Optional[ConversationState]:
        row = self.conn.execute(
            "SELECT * FROM conversation_state WHERE conversation_id=?", (conversation_id,)
        ).fetchone()
        if not row:
            return None
        return ConversationState(
            conversation_id=row["conversation_id"],
            summary=row["summary"],
            message_count=int(row["message_count"]),
            updated_at=int(row["updated_at"]),
        )

    def set_conversation_state(self, conversation_id: str, summary: str, message_count: int) -> bool:
        """Replace the stored summary. A lower message count than the stored one is ignored."""
        with self.conn:
            cur = self.conn.execute(
                """
                INSERT INTO conversation_state(conversation_id, summary, message_count, updated_at)
                VALUES (?,?,?,?)
                ON CONFLICT(conversation_id) DO UPDATE SET
                  summary=excluded.summary,
                  message_count=excluded.message_count,
                  updated_at=excluded.updated_at
                WHERE excluded.message_count >= conversation_state.message_count
                """,
                (conversation_id, summary, int(message_count), _now()),
            )
        return cur.rowcount == 1

    # ----- audit -----
    def log_action(
        self, beacon_id: str, action_type: str, payload: Any = None, status: Optional[str] = None
    ) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO actions(beacon_id, type, status, payload_json) VALUES (?,?,?,?)",
                    (beacon_id, action_type, status, json.dumps(payload or {}, ensure_ascii=False, default=str)),
                )
        except sqlite3.Error as exc:
            log.warning("Failed to log action %s for %s: %s", action_type, beacon_id, exc)

    def list_actions(self, beacon_id: str) -> List[dict]:
        rows = self.conn.execute(
            "SELECT type, status, payload_json FROM actions WHERE beacon_id=? ORDER BY id ASC",
            (beacon_id,),
        ).fetchall()
        return [
            {"type": row["type"], "status": row["status"], "payload": _parse_json(row["payload_json"])}
            for row in rows
        ]

    # ----- identity mapping -----
    def resolve_user(self, gateway_type: str, gateway_id: str, gateway_user: str) -> Optional[str]:
        link = self.resolve_links(gateway_type, gateway_id, gateway_user)
        return link.user_id if link else None

    def resolve_links(self, gateway_type: str, gateway_id: str, gateway_user: str) -> Optional[IdentityLink]:
        row = self.conn.execute(
            """
            SELECT user_id, brain_ref, identity_ref FROM identity_map
            WHERE gateway_type=? AND gateway_id=? AND gateway_user=?
            """,
            (gateway_type, gateway_id, gateway_user),
        ).fetchone()
        if not row:
            return None
        return IdentityLink(
            user_id=row["user_id"],
            brain_ref=row["brain_ref"] or None,
            identity_ref=row["identity_ref"] or None,
        )

    def resolve_user_loose(self, gateway_user: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT user_id FROM identity_map WHERE gateway_user=? ORDER BY created_at DESC, id DESC LIMIT 1",
            (gateway_user,),
        ).fetchone()
        return row["user_id"] if row else None

    def upsert_identity(
        self,
        gateway_type: str,
        gateway_id: str,
        gateway_user: str,
        user_id: str,
        *,
        brain_ref: Optional[str] = None,
        identity_ref: Optional[str] = None,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO identity_map(gateway_type, gateway_id, gateway_user, user_id, brain_ref, identity_ref, created_at)
                VALUES (?,?,?,?,?,?,?)
                ON CONFLICT(gateway_type, gateway_id, gateway_user) DO UPDATE SET
                  user_id=excluded.user_id,
                  brain_ref=COALESCE(excluded.brain_ref, identity_map.brain_ref),
                  identity_ref=COALESCE(excluded.identity_ref, identity_map.identity_ref)
                """,
                (gateway_type, gateway_id, gateway_user, user_id, brain_ref, identity_ref, _now()),
            )

    def find_gateway_user(
        self, user_id: str, gateway_type: Optional[str] = None, gateway_id: Optional[str] = None
    ) -> Optional[GatewayLink]:
        """Newest gateway account linked to ``user_id``, optionally restricted to one gateway type."""
        where = "user_id = ?"
        params: List[Any] = [user_id]
        if gateway_type:
            where += " AND gateway_type = ?"
            params.append(gateway_type)
        if gateway_id is not None:
            where += " AND gateway_id = ?"
            params.append(gateway_id)
        row = self.conn.execute(
            f"SELECT gateway_type, gateway_id, gateway_user FROM identity_map WHERE {where} "
            "ORDER BY created_at DESC, id DESC LIMIT 1",
            params,
        ).fetchone()
        if not row:
            return None
        return GatewayLink(row["gateway_type"], row["gateway_id"], row["gateway_user"])

    def is_known_gateway_user(self, gateway_user: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM identity_map WHERE gateway_user=? LIMIT 1", (gateway_user,)
        ).fetchone()
        return row is not None

    # ----- nicknames -----
    def upsert_nickname(self, user_id: str, nickname: str, ln_address: str) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO nicknames(user_id, nickname, ln_address) VALUES (?,?,?)
                ON CONFLICT(user_id, nickname) DO UPDATE SET ln_address=excluded.ln_address
                """,
                (user_id, nickname.lower(), ln_address),
            )

    def get_nickname(self, user_id: str, nickname: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT ln_address FROM nicknames WHERE user_id=? AND nickname=?",
            (user_id, nickname.lower()),
        ).fetchone()
        return row["ln_address"] if row else None

    def list_nicknames(self, user_id: str) -> List[Tuple[str, str]]:
        rows = self.conn.execute(
            "SELECT nickname, ln_address FROM nicknames WHERE user_id=? ORDER BY nickname ASC",
            (user_id,),
        ).fetchall()
        return [(row["nickname"], row["ln_address"]) for row in rows]

    def delete_nickname(self, user_id: str, nickname: str) -> bool:
        with self.conn:
            cur = self.conn.execute(
                "DELETE FROM nicknames WHERE user_id=? AND nickname=?", (user_id, nickname.lower())
            )
        return cur.rowcount > 0

    # ----- wallets -----
    def save_wallet(self, user_id: str, ln_address: Optional[str]) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO user_wallets(user_id, ln_address) VALUES (?,?)
                ON CONFLICT(user_id) DO UPDATE SET ln_address=excluded.ln_address
                """,
                (user_id, ln_address),
            )

    def get_ln_address(self, user_id: str) -> Optional[str]:
        row = self.conn.execute("SELECT ln_address FROM user_wallets WHERE user_id=?", (user_id,)).fetchone()
        return row["ln_address"] if row else None
