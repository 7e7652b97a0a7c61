"""WhatsApp client backed by the wacli binary.

- Pairing: ``wacli auth`` prints the QR payload; each payload line is
  surfaced as a pairing challenge.
- Session: ``wacli sync --follow`` keeps the WebSocket alive and writes
  incoming messages into wacli's SQLite store.
- Inbound: a poller reads new rows from that store.
- Outbound: ``wacli send text``.

Requires: wacli binary installed (`go install github.com/steipete/wacli@latest`).
"""

import asyncio
import base64
import hashlib
import logging
import os
import re
import shutil
import sqlite3
import time
from typing import Optional

from ..communication.outbound import split_message
from .client import MessagingClient
from .events import (
    ConnectionChanged,
    ConnectionStatus,
    CredentialsUpdated,
    DisconnectCause,
    MessageReceived,
)

logger = logging.getLogger("subgate.wacli")

# Reliability: dedup / echo
_ECHO_TTL = 20          # seconds
_DEDUP_MAX = 5000       # max cache entries before prune
_POLL_INTERVAL = 2.0
_SEND_TIMEOUT = 30

# WhatsApp multi-device QR payload: "2@<ref>,<noise key>,<identity key>,<adv secret>"
_QR_PAYLOAD_RE = re.compile(r"(\d@[A-Za-z0-9+/=_\-]+(?:,[A-Za-z0-9+/=_\-]+){2,})")

_LOGGED_OUT_MARKERS = ("logged out", "loggedout", "401", "device removed", "not authenticated")


def extract_qr_payload(line: str) -> Optional[str]:
    """Pull a QR payload out of one line of ``wacli auth`` output."""
    match = _QR_PAYLOAD_RE.search(line.strip())
    return match.group(1) if match else None


def classify_exit(stderr_tail: str) -> DisconnectCause:
    """Map the tail of wacli's stderr to a disconnect cause."""
    lowered = (stderr_tail or "").lower()
    if any(marker in lowered for marker in _LOGGED_OUT_MARKERS):
        return DisconnectCause.LOGGED_OUT
    return DisconnectCause.CONNECTION_LOST


class WacliClient(MessagingClient):
    """wacli subprocess bridge."""

    name = "wacli"

    def __init__(
        self,
        wacli_path: str = "wacli",
        store_dir: str = "~/.wacli",
        poll_interval: float = _POLL_INTERVAL,
    ):
        self._wacli_path = wacli_path
        self._store_dir = os.path.expanduser(store_dir)
        self._poll_interval = poll_interval
        self._events: Optional[asyncio.Queue] = None

        self._process: Optional[asyncio.subprocess.Process] = None
        self._auth_process: Optional[asyncio.subprocess.Process] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._pair_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._running = False

        self._last_rowid = 0
        self._seen_rowids: set[int] = set()
        self._echo_hashes: dict[str, float] = {}  # "chat_jid:md5" -> timestamp

    # ── Paths ─────────────────────────────────────────────────

    @property
    def session_db(self) -> str:
        """whatsmeow device store; this is the credential material."""
        return os.path.join(self._store_dir, "session.db")

    @property
    def messages_db(self) -> str:
        return os.path.join(self._store_dir, "wacli.db")

    @property
    def _sync_log(self) -> str:
        return os.path.join(self._store_dir, "sync.err")

    def resolve_binary(self) -> Optional[str]:
        """Full path to wacli, or None."""
        if os.path.isfile(self._wacli_path) and os.access(self._wacli_path, os.X_OK):
            return self._wacli_path
        found = shutil.which(self._wacli_path)
        if found:
            return found
        candidate = os.path.expanduser("~/go/bin/wacli")
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
        return None

    # ── Credentials ───────────────────────────────────────────

    def export_credentials(self) -> Optional[str]:
        """Base64 of session.db, or None when not paired."""
        if not os.path.isfile(self.session_db):
            return None
        with open(self.session_db, "rb") as f:
            return base64.b64encode(f.read()).decode("ascii")

    def restore_credentials(self, blob: str):
        """Write a previously exported session.db back into the store."""
        data = base64.b64decode(blob.encode("ascii"), validate=True)
        os.makedirs(self._store_dir, exist_ok=True)
        fd = os.open(self.session_db, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)

    # ── MessagingClient ───────────────────────────────────────

    async def connect(self, credentials: Optional[str], events: asyncio.Queue) -> None:
        binary = self.resolve_binary()
        if not binary:
            raise RuntimeError(
                "wacli binary not found. Install: go install github.com/steipete/wacli@latest"
            )
        self._wacli_path = binary
        self._events = events
        self._running = True
        os.makedirs(self._store_dir, exist_ok=True)

        # The live store is always newer than the persisted blob; the blob
        # only seeds a host that has no store yet.
        if not credentials:
            if os.path.isfile(self.session_db):
                logger.info("No stored credential, discarding local wacli session")
                os.remove(self.session_db)
        elif not os.path.isfile(self.session_db):
            try:
                self.restore_credentials(credentials)
            except (ValueError, OSError) as e:
                logger.warning(f"Stored credential unusable, falling back to pairing: {e}")

        if os.path.isfile(self.session_db):
            await self._start_session()
        else:
            self._pair_task = asyncio.create_task(self._pair())

    async def send_text(self, jid: str, text: str) -> Optional[str]:
        """Send via ``wacli send text``.

        `wacli sync --follow` holds an exclusive lock on the store. Running
        `wacli send ...` concurrently fails with "store is locked", so sync is
        paused for the duration of the send.
        """
        async with self._send_lock:
            was_syncing = self._process is not None
            if was_syncing:
                await self._stop_sync()

            try:
                for chunk in split_message(text):
                    await self._wacli_send_text(jid, chunk)
                    await asyncio.sleep(0.3)
            finally:
                if self._running and was_syncing:
                    ok = await self._start_sync()
                    if ok:
                        self._emit_credentials()
                    else:
                        logger.error("Failed to restart wacli sync after sending message")
                        self._emit_close(DisconnectCause.CONNECTION_LOST, "sync restart failed")
        return None

    async def close(self) -> None:
        self._running = False
        for task in (self._pair_task, self._poll_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pair_task = None
        self._poll_task = None

        if self._auth_process and self._auth_process.returncode is None:
            try:
                self._auth_process.kill()
            except ProcessLookupError:
                pass
        self._auth_process = None
        was_syncing = self._process is not None
        await self._stop_sync()
        if was_syncing:
            self._emit_credentials()

    # ── Pairing ───────────────────────────────────────────────

    async def _pair(self):
        """Run `wacli auth`, surfacing QR payloads until the device links."""
        try:
            self._auth_process = await asyncio.create_subprocess_exec(
                self._wacli_path, "auth",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            self._emit(ConnectionChanged(status=ConnectionStatus.CONNECTING))

            tail = []
            while True:
                raw = await self._auth_process.stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").rstrip()
                tail = (tail + [line])[-5:]
                payload = extract_qr_payload(line)
                if payload:
                    self._emit(ConnectionChanged(
                        status=ConnectionStatus.CONNECTING, pairing_challenge=payload,
                    ))

            rc = await self._auth_process.wait()
            self._auth_process = None
            if rc == 0 and os.path.isfile(self.session_db):
                logger.info("wacli paired successfully")
                await self._start_session()
            else:
                self._emit_close(DisconnectCause.PAIRING_FAILED, f"wacli auth rc={rc}: {' | '.join(tail)[:200]}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"wacli pairing error: {e}")
            self._emit_close(DisconnectCause.PAIRING_FAILED, str(e))

    # ── Session ───────────────────────────────────────────────

    async def _start_session(self):
        ok = await self._start_sync()
        if not ok:
            self._emit_close(DisconnectCause.CONNECTION_FAILED, "wacli sync did not start")
            return
        self._seed_last_rowid()
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())
        self._emit(ConnectionChanged(
            status=ConnectionStatus.OPEN, credentials=self.export_credentials(),
        ))

    async def _start_sync(self) -> bool:
        """Start the long-running `wacli sync --follow` process."""
        await self._stop_sync()
        try:
            with open(self._sync_log, "ab") as err:
                self._process = await asyncio.create_subprocess_exec(
                    self._wacli_path, "sync", "--follow",
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=err,
                )
        except Exception as e:
            logger.error(f"Failed to start wacli sync: {e}")
            self._process = None
            return False

        self._monitor_task = asyncio.create_task(self._monitor_loop())
        return True

    async def _stop_sync(self):
        """Stop the sync process (if any)."""
        # Stop monitor task first so it won't report the exit.
        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
        self._monitor_task = None

        if self._process:
            try:
                self._process.terminate()
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError):
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
            self._process = None

    async def _monitor_loop(self):
        """Watch the wacli sync process and report an unexpected exit."""
        try:
            if self._process:
                rc = await self._process.wait()
                self._process = None
                if self._running:
                    tail = self._read_sync_log_tail()
                    cause = classify_exit(tail)
                    logger.warning(f"wacli sync exited unexpectedly (rc={rc}, cause={cause.value})")
                    self._running = cause != DisconnectCause.LOGGED_OUT
                    if self._poll_task and not self._poll_task.done():
                        self._poll_task.cancel()
                    self._emit_close(cause, tail[-200:])
        except asyncio.CancelledError:
            pass

    def _read_sync_log_tail(self, size: int = 2048) -> str:
        try:
            with open(self._sync_log, "rb") as f:
                f.seek(0, os.SEEK_END)
                f.seek(max(0, f.tell() - size))
                return f.read().decode("utf-8", errors="replace")
        except OSError:
            return ""

    # ── Inbound DB poller ─────────────────────────────────────

    def _seed_last_rowid(self):
        """Only process messages that arrive after the session opens."""
        if not os.path.isfile(self.messages_db):
            self._last_rowid = 0
            return
        try:
            conn = sqlite3.connect(self.messages_db, timeout=5)
            cur = conn.execute("SELECT MAX(rowid) FROM messages")
            self._last_rowid = cur.fetchone()[0] or 0
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Failed to read wacli DB: {e}")
            self._last_rowid = 0

    async def _poll_loop(self):
        """Poll wacli SQLite DB for new inbound messages."""
        logger.info(f"WhatsApp poller started (last_rowid={self._last_rowid}, db={self.messages_db})")
        while self._running:
            try:
                await asyncio.sleep(self._poll_interval)
                if not self._running:
                    break
                for event in self._fetch_new_messages():
                    self._emit(event)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in WhatsApp poll loop: {e}", exc_info=True)
                await asyncio.sleep(5)

    def _fetch_new_messages(self) -> list[MessageReceived]:
        if not os.path.isfile(self.messages_db):
            return []
        conn = sqlite3.connect(self.messages_db, timeout=5)
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute("""
                SELECT rowid, chat_jid, sender_jid, sender_name, text, from_me, msg_id
                FROM messages
                WHERE rowid > ?
                  AND ((text IS NOT NULL AND text != '') OR media_type IS NOT NULL)
                  AND chat_jid != 'status@broadcast'
                ORDER BY rowid ASC
            """, (self._last_rowid,)).fetchall()
        finally:
            conn.close()

        if len(self._seen_rowids) > _DEDUP_MAX:
            self._seen_rowids = set(sorted(self._seen_rowids)[-_DEDUP_MAX:])
        now = time.time()
        self._echo_hashes = {k: v for k, v in self._echo_hashes.items() if (now - v) < _ECHO_TTL}

        events = []
        for row in rows:
            rowid = row["rowid"]
            self._last_rowid = rowid
            if rowid in self._seen_rowids:
                continue
            self._seen_rowids.add(rowid)

            chat_jid = row["chat_jid"] or ""
            text = (row["text"] or "").strip()
            from_me = bool(row["from_me"])

            # Our own send coming back through sync
            h = self._content_hash(chat_jid, text)
            if text and h in self._echo_hashes:
                del self._echo_hashes[h]
                from_me = True

            events.append(MessageReceived(
                sender=chat_jid,
                text=text,
                from_me=from_me,
                message_id=row["msg_id"],
                push_name=row["sender_name"] or "",
            ))
        return events

    # ── Outbound ──────────────────────────────────────────────

    async def _wacli_send_text(self, jid: str, text: str):
        """Low-level: send a single text chunk. Caller must hold _send_lock."""
        proc = await asyncio.create_subprocess_exec(
            self._wacli_path, "send", "text",
            "--to", jid,
            "--message", text,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=_SEND_TIMEOUT)
        except BaseException:
            # Timed out or cancelled by the caller; the child must not
            # outlive us while holding the store lock.
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            raise
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace") if stderr else ""
            raise RuntimeError(f"wacli send text failed (rc={proc.returncode}): {err[:200]}")
        self._echo_hashes[self._content_hash(jid, text)] = time.time()

    # ── Internal ──────────────────────────────────────────────

    def _content_hash(self, chat_jid: str, text: str) -> str:
        """Return a compact content hash for echo detection."""
        return f"{chat_jid}:{hashlib.md5(text.encode()).hexdigest()[:12]}"

    def _emit(self, event):
        if self._events is not None:
            self._events.put_nowait(event)

    def _emit_credentials(self):
        blob = self.export_credentials()
        if blob:
            self._emit(CredentialsUpdated(credentials=blob))

    def _emit_close(self, cause: DisconnectCause, detail: str = ""):
        self._emit(ConnectionChanged(status=ConnectionStatus.CLOSE, cause=cause, detail=detail))
