"""
Configuration management (SSOT).

This module defines ALL configuration for the reconciliation engine.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Money tolerance is a Decimal and compared strictly (delta < tolerance)
- Every external call (document provider, SQLite lock wait) has a timeout
- Retries apply to single-transaction operations only
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml

DOCUMENT_PROVIDERS = ("store", "http")


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ReconciliationConfig:
    """Matching settings."""

    # Delta below which documents settle a line (MATCHED), otherwise PARTIAL
    tolerance: Decimal = Decimal("0.01")
    # Run the rule engine after each statement import
    auto_match_enabled: bool = True
    # Upper bound on candidates returned to the manual workflow
    max_candidates: int = 20


@dataclass
class StoreConfig:
    """SQLite state store settings."""

    # How long a writer waits for the database lock (seconds)
    busy_timeout_seconds: float = 5.0
    # Attempts for transient failures (lock contention, concurrent update)
    max_retries: int = 3
    # Exponential backoff multiplier between attempts (seconds)
    retry_backoff_seconds: float = 0.1


@dataclass
class DocumentsConfig:
    """Document provider settings.

    - store: documents are read from the local projection table
    - http: documents are fetched from a REST document service
    """

    provider: str = "store"
    base_url: str | None = None
    token: str = ""
    timeout_seconds: int = 10
    max_retries: int = 3
    backoff_factor: float = 0.5


@dataclass
class StatementConfig:
    """CSV statement reader settings."""

    # None: sniff between ';', ',' and tab
    delimiter: str | None = None
    encoding: str = "utf-8-sig"


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    documents: DocumentsConfig = field(default_factory=DocumentsConfig)
    statement: StatementConfig = field(default_factory=StatementConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/reconcile.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.reconciliation.tolerance <= 0:
            errors.append("reconciliation.tolerance must be > 0")
        if self.reconciliation.max_candidates < 1:
            errors.append("reconciliation.max_candidates must be >= 1")

        if self.store.max_retries < 1:
            errors.append("store.max_retries must be >= 1")
        if self.store.busy_timeout_seconds <= 0:
            errors.append("store.busy_timeout_seconds must be > 0")

        if self.documents.provider not in DOCUMENT_PROVIDERS:
            errors.append(
                f"documents.provider must be one of {', '.join(DOCUMENT_PROVIDERS)}, "
                f"got '{self.documents.provider}'"
            )
        elif self.documents.provider == "http" and not self.documents.base_url:
            errors.append("documents.base_url is required when documents.provider is 'http'")

        if self.documents.timeout_seconds <= 0:
            errors.append("documents.timeout_seconds must be > 0")

        return errors

    def require_valid(self) -> None:
        """Raise ConfigValidationError listing every problem found."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))


def _parse_tolerance(value: object) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ConfigValidationError(f"Invalid tolerance: {value!r}") from None


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECONCILE_DB_PATH
    - RECONCILE_TOLERANCE
    - DOCUMENTS_PROVIDER (store/http)
    - DOCUMENTS_URL
    - DOCUMENTS_TOKEN
    - DOCUMENTS_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Reconciliation config
    recon_data = data.get("reconciliation", {})
    reconciliation = ReconciliationConfig(
        tolerance=_parse_tolerance(
            os.environ.get("RECONCILE_TOLERANCE", recon_data.get("tolerance", "0.01"))
        ),
        auto_match_enabled=recon_data.get("auto_match_enabled", True),
        max_candidates=int(recon_data.get("max_candidates", 20)),
    )

    # Store config
    store_data = data.get("store", {})
    store = StoreConfig(
        busy_timeout_seconds=float(store_data.get("busy_timeout_seconds", 5.0)),
        max_retries=int(store_data.get("max_retries", 3)),
        retry_backoff_seconds=float(store_data.get("retry_backoff_seconds", 0.1)),
    )

    # Documents config
    docs_data = data.get("documents", {})
    documents = DocumentsConfig(
        provider=os.environ.get("DOCUMENTS_PROVIDER", docs_data.get("provider", "store")),
        base_url=os.environ.get("DOCUMENTS_URL", docs_data.get("base_url")),
        token=os.environ.get("DOCUMENTS_TOKEN", docs_data.get("token", "")),
        timeout_seconds=int(
            os.environ.get("DOCUMENTS_TIMEOUT", docs_data.get("timeout_seconds", 10))
        ),
        max_retries=int(docs_data.get("max_retries", 3)),
        backoff_factor=float(docs_data.get("backoff_factor", 0.5)),
    )

    # Statement reader
    statement_data = data.get("statement", {})
    statement = StatementConfig(
        delimiter=statement_data.get("delimiter"),
        encoding=statement_data.get("encoding", "utf-8-sig"),
    )

    # State DB
    state_db = os.environ.get("RECONCILE_DB_PATH", data.get("state_db_path", "data/reconcile.db"))

    return Config(
        reconciliation=reconciliation,
        store=store,
        documents=documents,
        statement=statement,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Bank statement reconciliation configuration

# Matching settings
reconciliation:
  tolerance: "0.01"          # MATCHED when |documents - line| < tolerance, else PARTIAL
  auto_match_enabled: true   # Apply matching rules right after an import
  max_candidates: 20         # Candidates shown for manual matching

# SQLite state store
store:
  busy_timeout_seconds: 5.0  # Wait this long for the database lock
  max_retries: 3             # Attempts for lock contention / concurrent updates
  retry_backoff_seconds: 0.1 # Exponential backoff multiplier

# Where invoices, subscriptions and charge declarations come from
documents:
  provider: "store"          # store: local projection table, http: document service
  base_url: null             # Required for provider: http
  token: ""
  timeout_seconds: 10
  max_retries: 3
  backoff_factor: 0.5

# CSV statement reader
statement:
  delimiter: null            # null: detect ';', ',' or tab
  encoding: "utf-8-sig"

# State database path
state_db_path: "data/reconcile.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
