"""In-memory stand-in for the Postgres store.

Queries are matched by their whitespace-normalised prefix, the same way the
dummy cursors in the other tests match them. Unique and foreign-key
constraints raise the psycopg exception classes the real server would, with
the constraint name available through ``exc.diag.constraint_name``.
"""
import copy
import re
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import psycopg

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def violation(base, constraint):
    cls = type(base.__name__, (base,), {"diag": SimpleNamespace(constraint_name=constraint)})
    return cls(f'violates constraint "{constraint}"')


def normalize(query):
    return " ".join(query.split())


class FakeStore:
    def __init__(self):
        self.users = {}
        self.tokens = []
        self.conversations = {}
        self.groups = {}
        self.participants = []
        self.messages = {}
        self.executed = []
        self._seq = {"users": 0, "conversations": 0, "messages": 0}
        self._clock = EPOCH
        self.frozen = False

    def now(self):
        if not self.frozen:
            self._clock += timedelta(seconds=1)
        return self._clock

    def next_id(self, table):
        self._seq[table] += 1
        return self._seq[table]

    def snapshot(self):
        return copy.deepcopy({k: v for k, v in self.__dict__.items() if k != "executed"})

    def restore(self, state):
        self.__dict__.update(state)

    # -------- helpers used by tests to seed data --------
    def add_user(self, username, email=None, is_active=True, password_hash="pbkdf2_sha256$1$salt$00"):
        uid = self.next_id("users")
        now = self.now()
        self.users[uid] = {
            "id": uid,
            "username": username,
            "email": email or f"{username}@example.com",
            "bio": None,
            "password_hash": password_hash,
            "is_active": is_active,
            "email_verified_at": now if is_active else None,
            "created_at": now,
            "updated_at": now,
            "version": 1,
        }
        return uid

    def private_conversations_between(self, a, b):
        key = ":".join(str(x) for x in sorted((a, b)))
        return [c for c in self.conversations.values() if c["private_key"] == key]

    def members(self, conversation_id):
        return sorted(p["user_id"] for p in self.participants if p["conversation_id"] == conversation_id)

    def add_message(self, conversation_id, sender_id, content="hi", type="text", replied_message_id=None):
        mid = self.next_id("messages")
        now = self.now()
        self.messages[mid] = {
            "id": mid,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "type": type,
            "content": content,
            "replied_message_id": replied_message_id,
            "created_at": now,
            "updated_at": now,
        }
        return mid


class FakeCursor:
    def __init__(self, store):
        self.store = store
        self._rows = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def _set(self, rows):
        self._rows = rows
        self.rowcount = len(rows)

    def execute(self, query, params=None):
        s = self.store
        q = normalize(query)
        params = tuple(params or ())
        s.executed.append((q, params))

        if q.startswith("CREATE "):
            self._set([])

        # -------- users --------
        elif q.startswith("INSERT INTO users"):
            username, email, bio, password_hash, is_active = params
            for u in s.users.values():
                if u["username"] == username:
                    raise violation(psycopg.errors.UniqueViolation, "users_username_key")
                if u["email"] == email:
                    raise violation(psycopg.errors.UniqueViolation, "users_email_key")
            uid = s.next_id("users")
            now = s.now()
            s.users[uid] = {
                "id": uid,
                "username": username,
                "email": email,
                "bio": bio,
                "password_hash": password_hash,
                "is_active": is_active,
                "email_verified_at": None,
                "created_at": now,
                "updated_at": now,
                "version": 1,
            }
            self._set([{"id": uid, "created_at": now, "updated_at": now, "version": 1}])
        elif q.startswith("SELECT id, username, email") and "WHERE id = %s" in q:
            row = s.users.get(params[0])
            self._set([dict(row)] if row else [])
        elif q.startswith("SELECT id, username, email") and "WHERE email = %s" in q:
            self._set([dict(u) for u in s.users.values() if u["email"] == params[0]])
        elif q.startswith("UPDATE users SET"):
            username, email, bio, password_hash, is_active, verified_at, uid, version = params
            row = s.users.get(uid)
            if row is None or row["version"] != version:
                self._set([])
                return
            now = s.now()
            row.update(
                username=username,
                email=email,
                bio=bio,
                password_hash=password_hash,
                is_active=is_active,
                email_verified_at=verified_at,
                updated_at=now,
                version=version + 1,
            )
            self._set([{"updated_at": now, "version": version + 1}])

        # -------- tokens --------
        elif q.startswith("INSERT INTO tokens"):
            user_id, token_hash, expiry, scope = params
            if user_id not in s.users:
                raise violation(psycopg.errors.ForeignKeyViolation, "tokens_user_id_fkey")
            s.tokens.append({"user_id": user_id, "hash": token_hash, "expiry": expiry, "scope": scope})
            self._set([])
        elif q.startswith("SELECT u.id, u.username"):
            token_hash, scope, now = params
            rows = [
                dict(s.users[t["user_id"]])
                for t in s.tokens
                if t["hash"] == token_hash and t["scope"] == scope and t["expiry"] > now
            ]
            self._set(rows[:1])
        elif q.startswith("DELETE FROM tokens"):
            user_id, scope = params
            before = len(s.tokens)
            s.tokens = [t for t in s.tokens if not (t["user_id"] == user_id and t["scope"] == scope)]
            self._set([])
            self.rowcount = before - len(s.tokens)

        # -------- conversations --------
        elif q.startswith("SELECT c.id, c.type, c.created_at, c.updated_at FROM conversations c JOIN"):
            a, b = params
            found = []
            for c in sorted(s.conversations.values(), key=lambda c: c["id"]):
                members = s.members(c["id"])
                if c["type"] == "private" and a in members and b in members and len(members) == 2:
                    found.append(self._conversation_row(c))
            self._set(found[:1])
        elif q.startswith("INSERT INTO conversations (type, private_key)"):
            (key,) = params
            if any(c["private_key"] == key for c in s.conversations.values()):
                self._set([])
                return
            self._set([self._insert_conversation("private", key)])
        elif q.startswith("SELECT id, type, created_at, updated_at FROM conversations WHERE private_key"):
            self._set(
                [self._conversation_row(c) for c in s.conversations.values() if c["private_key"] == params[0]]
            )
        elif q.startswith("INSERT INTO conversations (type) VALUES ('group')"):
            self._set([self._insert_conversation("group", None)])
        elif q.startswith("INSERT INTO group_metadata"):
            conversation_id, owner_id, name = params
            if owner_id not in s.users:
                raise violation(psycopg.errors.ForeignKeyViolation, "group_metadata_owner_id_fkey")
            s.groups[conversation_id] = {"owner_id": owner_id, "name": name}
            self._set([])
        elif q.startswith("SELECT EXISTS(SELECT 1 FROM conversations WHERE"):
            cid, ctype = params
            c = s.conversations.get(cid)
            self._set([{"found": bool(c and c["type"] == ctype)}])
        elif q.startswith("SELECT c.id, c.type, g.name, g.owner_id"):
            cid, ctype = params
            c = s.conversations.get(cid)
            self._set([self._full_conversation_row(c)] if c and c["type"] == ctype else [])
        elif q.startswith("SELECT count(*) OVER() AS total_records, c.id"):
            self._list_with_preview(*params)

        # -------- participants --------
        elif q.startswith("SELECT EXISTS( SELECT 1 FROM conversation_participants"):
            uid, cid, ctype = params
            c = s.conversations.get(cid)
            ok = bool(c and c["type"] == ctype and uid in s.members(cid))
            self._set([{"found": ok}])
        elif q.startswith("INSERT INTO conversation_participants"):
            cid, uid = params
            if any(p["conversation_id"] == cid and p["user_id"] == uid for p in s.participants):
                raise violation(psycopg.errors.UniqueViolation, "unique_participant")
            if cid not in s.conversations:
                raise violation(
                    psycopg.errors.ForeignKeyViolation, "conversation_participants_conversation_id_fkey"
                )
            if uid not in s.users:
                raise violation(psycopg.errors.ForeignKeyViolation, "conversation_participants_user_id_fkey")
            row = {"conversation_id": cid, "user_id": uid, "created_at": s.now()}
            s.participants.append(row)
            self._set([dict(row)])

        # -------- messages --------
        elif q.startswith("INSERT INTO conversation_messages"):
            cid, sender_id, mtype, content, replied = params
            if replied is not None and replied not in s.messages:
                raise violation(
                    psycopg.errors.ForeignKeyViolation, "conversation_messages_replied_message_id_fkey"
                )
            mid = s.add_message(cid, sender_id, content=content, type=mtype, replied_message_id=replied)
            m = s.messages[mid]
            self._set([{"id": mid, "created_at": m["created_at"], "updated_at": m["updated_at"]}])
        elif q.startswith("SELECT count(*) OVER() AS total_records, m.id"):
            self._list_messages(q, *params)
        elif q.startswith("SELECT EXISTS( SELECT 1 FROM conversation_messages"):
            mid, cid, ctype = params
            m = s.messages.get(mid)
            c = s.conversations.get(cid)
            ok = bool(m and c and m["conversation_id"] == cid and c["type"] == ctype)
            self._set([{"found": ok}])
        else:
            raise AssertionError(f"unexpected query: {q}")

    # -------- row builders --------
    def _insert_conversation(self, ctype, key):
        s = self.store
        cid = s.next_id("conversations")
        now = s.now()
        s.conversations[cid] = {
            "id": cid,
            "type": ctype,
            "private_key": key,
            "created_at": now,
            "updated_at": now,
        }
        return self._conversation_row(s.conversations[cid])

    @staticmethod
    def _conversation_row(c):
        return {k: c[k] for k in ("id", "type", "created_at", "updated_at")}

    def _full_conversation_row(self, c):
        meta = self.store.groups.get(c["id"], {})
        row = self._conversation_row(c)
        row.update(name=meta.get("name"), owner_id=meta.get("owner_id"))
        return row

    @staticmethod
    def _message_columns(m, prefix=""):
        keys = ("id", "conversation_id", "sender_id", "type", "content", "replied_message_id", "created_at", "updated_at")
        if m is None:
            return {prefix + k: None for k in keys}
        return {prefix + k: m[k] for k in keys}

    def _list_with_preview(self, user_id, limit, offset):
        s = self.store
        items = []
        for p in s.participants:
            if p["user_id"] != user_id:
                continue
            c = s.conversations[p["conversation_id"]]
            msgs = [m for m in s.messages.values() if m["conversation_id"] == c["id"]]
            last = max(msgs, key=lambda m: (m["created_at"], m["id"])) if msgs else None
            peer = None
            if c["type"] == "private":
                others = [u for u in s.members(c["id"]) if u != user_id]
                peer = others[0] if others else None
            row = self._full_conversation_row(c)
            row["peer_id"] = peer
            row.update(self._message_columns(last, "lm_"))
            items.append(row)
        items.sort(key=lambda r: ((r["lm_created_at"] or r["created_at"]), r["id"]), reverse=True)
        total = len(items)
        page = items[offset:offset + limit]
        for row in page:
            row["total_records"] = total
        self._set(page)

    def _list_messages(self, q, conversation_id, limit, offset):
        s = self.store
        group = "INNER JOIN users u" in q
        order = re.search(r"ORDER BY m\.(\w+) (ASC|DESC), m\.id (ASC|DESC)", q)
        column, direction = order.group(1), order.group(2)
        rows = []
        for m in s.messages.values():
            if m["conversation_id"] != conversation_id:
                continue
            if group and m["sender_id"] not in s.users:
                continue
            row = self._message_columns(m)
            row.update(self._message_columns(s.messages.get(m["replied_message_id"]), "r_"))
            if group:
                u = s.users[m["sender_id"]]
                row.update(
                    sender_username=u["username"],
                    sender_email=u["email"],
                    sender_bio=u["bio"],
                    sender_is_active=u["is_active"],
                )
            rows.append(row)
        rows.sort(key=lambda r: (r[column], r["id"]), reverse=(direction == "DESC"))
        total = len(rows)
        page = rows[offset:offset + limit]
        for row in page:
            row["total_records"] = total
        self._set(page)


class FakeConnection:
    def __init__(self, store):
        self.store = store

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return FakeCursor(self.store)

    def commit(self):
        return None


class FakeDatabase:
    """Each ``connection()`` block is one serialised transaction, rolled back on error."""

    def __init__(self, store=None):
        self.store = store or FakeStore()
        self._lock = threading.RLock()
        self.opened = False
        self.closed = False

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    @contextmanager
    def connection(self):
        with self._lock:
            state = self.store.snapshot()
            try:
                yield FakeConnection(self.store)
            except BaseException:
                self.store.restore(state)
                raise
