import base64
import logging
import re
import threading
from concurrent.futures import Future

from algosdk import mnemonic, transaction
from algosdk.account import address_from_private_key
from algosdk.v2client import algod, indexer

import config
from models import ANCHOR_NOT_CONFIGURED, ANCHOR_PUBLISH_FAILED, AnchorResult

logger = logging.getLogger(__name__)

ANCHOR_NOTE_PREFIX = "GIA1|"
SYSTEM_AUDIT_REF = "system_audit"
DEFAULT_PUBLISH_TIMEOUT_SECONDS = 30

_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


def build_anchor_note(ref, digest):
    return f"{ANCHOR_NOTE_PREFIX}{ref}|{digest}"


def parse_anchor_note(note_text):
    if not note_text or not note_text.startswith(ANCHOR_NOTE_PREFIX):
        return None, None
    body = note_text[len(ANCHOR_NOTE_PREFIX):]
    ref, sep, digest = body.partition("|")
    if not sep or not ref or not digest:
        return None, None
    return ref, digest


class AlgorandAnchorClient:
    """Writes digests into 0-ALGO self-payment notes and finds them again."""

    def __init__(self, sender=None, private_key=None, mnemonic_phrase=None):
        self.sender = sender if sender is not None else config.ANCHOR_SENDER
        self._private_key = private_key if private_key is not None else config.ANCHOR_PRIVATE_KEY
        self._mnemonic = mnemonic_phrase if mnemonic_phrase is not None else config.ANCHOR_MNEMONIC

    def is_configured(self):
        return bool(self.sender and (self._private_key or self._mnemonic))

    def _algod_client(self):
        return algod.AlgodClient(config.ALGOD_TOKEN, config.ALGOD_ADDRESS)

    def _indexer_client(self):
        return indexer.IndexerClient(config.INDEXER_TOKEN, config.INDEXER_ADDRESS)

    def _signing_key(self):
        private_key = self._private_key
        if not private_key and self._mnemonic:
            private_key = mnemonic.to_private_key(self._mnemonic)
        if not private_key:
            raise RuntimeError("Set ANCHOR_PRIVATE_KEY or ANCHOR_MNEMONIC to publish anchors")
        if address_from_private_key(private_key) != self.sender:
            raise RuntimeError("ANCHOR_SENDER does not match private key/mnemonic")
        return private_key

    def send(self, ref, digest):
        private_key = self._signing_key()
        client = self._algod_client()
        params = client.suggested_params()
        note = build_anchor_note(ref, digest).encode("utf-8")
        txn = transaction.PaymentTxn(self.sender, params, self.sender, 0, note=note)
        signed = txn.sign(private_key)
        return client.send_transaction(signed)

    def find(self, ref, digest):
        client = self._indexer_client()
        res = client.search_transactions(
            address=self.sender,
            tx_type="pay",
            note_prefix=build_anchor_note(ref, digest).encode("utf-8"),
            limit=10,
        )
        for tx in res.get("transactions", []):
            note_b64 = tx.get("note")
            if not note_b64:
                continue
            try:
                note_text = base64.b64decode(note_b64).decode("utf-8")
            except (TypeError, ValueError):
                continue
            note_ref, note_digest = parse_anchor_note(note_text)
            if note_ref == ref and note_digest == digest:
                return tx.get("id")
        return None


class Anchor:
    """Best-effort, idempotent publication of audit digests.

    One digest maps to at most one external reference: references already
    seen are reused, the chain is searched before sending, and concurrent
    publishes of the same digest share a single in-flight future.
    """

    def __init__(self, client=None, ref=SYSTEM_AUDIT_REF, timeout=DEFAULT_PUBLISH_TIMEOUT_SECONDS):
        self.client = client or AlgorandAnchorClient()
        self.ref = ref
        self.timeout = timeout
        self._lock = threading.Lock()
        self._references = {}
        self._inflight = {}

    def lookup(self, digest):
        with self._lock:
            cached = self._references.get(digest)
        if cached:
            return cached
        if not self.client.is_configured():
            return None
        try:
            reference = self.client.find(self.ref, digest)
        except Exception as exc:
            logger.warning("anchor lookup failed hash=%s: %s", digest, exc)
            return None
        if reference:
            self._remember(digest, reference)
        return reference

    def publish_async(self, digest):
        if not isinstance(digest, str) or not _DIGEST_RE.match(digest):
            raise ValueError("digest must be a 64-character lowercase hex string")
        with self._lock:
            future = self._inflight.get(digest)
            if future is not None:
                return future
            future = Future()
            self._inflight[digest] = future
        thread = threading.Thread(
            target=self._run, args=(digest, future), name="audit-anchor-publish", daemon=True
        )
        thread.start()
        return future

    def publish(self, digest):
        future = self.publish_async(digest)
        try:
            return future.result(timeout=self.timeout)
        except Exception as exc:
            logger.warning("%s hash=%s: %s", ANCHOR_PUBLISH_FAILED, digest, exc)
            return AnchorResult(digest=digest, anchored=False, error=ANCHOR_PUBLISH_FAILED)

    def _run(self, digest, future):
        try:
            result = self._publish_once(digest)
        except Exception:
            logger.exception("%s hash=%s", ANCHOR_PUBLISH_FAILED, digest)
            result = AnchorResult(digest=digest, anchored=False, error=ANCHOR_PUBLISH_FAILED)
        with self._lock:
            self._inflight.pop(digest, None)
        future.set_result(result)

    def _remember(self, digest, reference):
        with self._lock:
            self._references.setdefault(digest, reference)

    def _publish_once(self, digest):
        with self._lock:
            cached = self._references.get(digest)
        if cached:
            return AnchorResult(digest=digest, anchored=True, reference=cached, reused=True)

        if not self.client.is_configured():
            logger.info("anchor not configured; hash=%s kept local only", digest)
            return AnchorResult(digest=digest, anchored=False, error=ANCHOR_NOT_CONFIGURED)

        try:
            existing = self.client.find(self.ref, digest)
            if existing:
                self._remember(digest, existing)
                logger.info("anchor already published hash=%s tx=%s", digest, existing)
                return AnchorResult(digest=digest, anchored=True, reference=existing, reused=True)
            reference = self.client.send(self.ref, digest)
        except Exception as exc:
            logger.warning("%s hash=%s: %s", ANCHOR_PUBLISH_FAILED, digest, exc)
            return AnchorResult(digest=digest, anchored=False, error=ANCHOR_PUBLISH_FAILED)

        self._remember(digest, reference)
        logger.info("anchor published hash=%s tx=%s", digest, reference)
        return AnchorResult(digest=digest, anchored=True, reference=reference)
