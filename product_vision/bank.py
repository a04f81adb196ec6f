"""
Per-tenant visual bank storage.

Banks are append-only: registering a product again adds a superseding
token, nothing is ever updated or removed. Reads return a tuple snapshot,
so a registration that lands mid-read is either fully visible or not at
all.

Stores:
    InMemoryBankStore   process-local lists, one per tenant
    JsonLinesBankStore  one <tenant>.jsonl file per tenant, one token per line
    RetryingBankStore   wraps a remote store with a shared RetryPolicy
"""

import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .errors import EncodingError, TenantMismatchError
from .retry import RetryPolicy
from .tokens import VisualToken

logger = logging.getLogger(__name__)

_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class BankStore(ABC):
    """Append-only token storage partitioned by tenant."""

    def register(self, token: VisualToken, tenant_id: Optional[str] = None) -> None:
        """
        Append a token to its tenant's bank.

        Args:
            token: Token to store.
            tenant_id: Partition the caller means to write to. Defaults to
                the token's own tenant.

        Raises:
            TenantMismatchError: If the token belongs to another tenant.
        """
        partition = token.tenant_id if tenant_id is None else tenant_id
        if token.tenant_id != partition:
            raise TenantMismatchError(
                f"Token {token.token_id[:12]} belongs to tenant {token.tenant_id!r}, "
                f"not {partition!r}"
            )
        self._append(token)
        logger.info(
            f"Registered token {token.token_id[:12]} for product "
            f"{token.product_id!r} (tenant {partition!r})"
        )

    def tokens_for(self, tenant_id: str) -> Tuple[VisualToken, ...]:
        """Snapshot of every token registered for the tenant, oldest first."""
        tokens = self._read(tenant_id)
        for token in tokens:
            if token.tenant_id != tenant_id:
                raise TenantMismatchError(
                    f"Bank for tenant {tenant_id!r} holds a token of {token.tenant_id!r}"
                )
        return tokens

    def tokens_for_product(self, tenant_id: str, product_id: str) -> Tuple[VisualToken, ...]:
        return tuple(t for t in self.tokens_for(tenant_id) if t.product_id == product_id)

    def bank(self, tenant_id: str) -> "TenantBank":
        return TenantBank(self, tenant_id)

    @abstractmethod
    def tenants(self) -> List[str]:
        """Tenants that have at least one registered token."""

    @abstractmethod
    def _append(self, token: VisualToken) -> None:
        """Atomically append one token."""

    @abstractmethod
    def _read(self, tenant_id: str) -> Tuple[VisualToken, ...]:
        """Snapshot of the tenant's partition."""


class TenantBank:
    """A store view bound to a single tenant's partition."""

    def __init__(self, store: BankStore, tenant_id: str):
        self.store = store
        self.tenant_id = tenant_id

    def register(self, token: VisualToken) -> None:
        self.store.register(token, tenant_id=self.tenant_id)

    def tokens(self) -> Tuple[VisualToken, ...]:
        return self.store.tokens_for(self.tenant_id)

    def tokens_for_product(self, product_id: str) -> Tuple[VisualToken, ...]:
        return self.store.tokens_for_product(self.tenant_id, product_id)

    def __len__(self):
        return len(self.tokens())

    def __iter__(self):
        return iter(self.tokens())


class InMemoryBankStore(BankStore):
    """Thread-safe in-process store; the lock covers only append and copy."""

    def __init__(self):
        self._tokens: Dict[str, List[VisualToken]] = defaultdict(list)
        self._lock = threading.Lock()

    def tenants(self) -> List[str]:
        with self._lock:
            return sorted(t for t, tokens in self._tokens.items() if tokens)

    def _append(self, token: VisualToken) -> None:
        with self._lock:
            self._tokens[token.tenant_id].append(token)

    def _read(self, tenant_id: str) -> Tuple[VisualToken, ...]:
        with self._lock:
            return tuple(self._tokens.get(tenant_id, ()))


class JsonLinesBankStore(BankStore):
    """
    File-backed store: <root>/<tenant>.jsonl, one JSON token record per line.

    Each registration is a single write of a complete line. A reader that
    races a writer may see a trailing line without its newline; that line
    is skipped and will be read in full next time.
    """

    def __init__(self, root_dir: Union[str, Path]):
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def path_for(self, tenant_id: str) -> Path:
        if not isinstance(tenant_id, str) or not _TENANT_ID_PATTERN.match(tenant_id):
            raise ValueError(f"Tenant id {tenant_id!r} is not a safe file name")
        return self.root_dir / f"{tenant_id}.jsonl"

    def tenants(self) -> List[str]:
        return sorted(p.stem for p in self.root_dir.glob("*.jsonl") if p.stat().st_size > 0)

    def _lock_for(self, tenant_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[tenant_id]

    def _append(self, token: VisualToken) -> None:
        path = self.path_for(token.tenant_id)
        line = json.dumps(token.to_dict(), sort_keys=True, separators=(",", ":")) + "\n"
        with self._lock_for(token.tenant_id):
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

    def _read(self, tenant_id: str) -> Tuple[VisualToken, ...]:
        path = self.path_for(tenant_id)
        if not path.exists():
            return ()

        with open(path, "r", encoding="utf-8") as f:
            text = f.read()

        lines = text.split("\n")
        if lines[-1]:
            logger.warning(f"Skipping partially written record at end of {path.name}")
        tokens = []
        for lineno, line in enumerate(lines[:-1], start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                raise EncodingError(f"{path.name}:{lineno} is not valid JSON: {e}") from e
            if record.get("tenant_id") != tenant_id:
                raise TenantMismatchError(
                    f"{path.name}:{lineno} holds a token of tenant {record.get('tenant_id')!r}"
                )
            tokens.append(VisualToken.from_dict(record))
        return tuple(tokens)


class RetryingBankStore(BankStore):
    """
    Apply one RetryPolicy to every call into a remote store.

    Only transient errors listed in the policy are retried; tenant
    mismatches and encoding errors surface on the first attempt.
    """

    def __init__(self, inner: BankStore, policy: Optional[RetryPolicy] = None):
        self.inner = inner
        self.policy = policy or RetryPolicy()

    def tenants(self) -> List[str]:
        return self.policy.call(self.inner.tenants)

    def _append(self, token: VisualToken) -> None:
        self.policy.call(self.inner.register, token)

    def _read(self, tenant_id: str) -> Tuple[VisualToken, ...]:
        return self.policy.call(self.inner.tokens_for, tenant_id)
