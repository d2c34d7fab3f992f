"""
Accounts and users.

An Account groups users and scenarios and may point at an external vector
store holding its reference procedures.  ``procedure_history`` is an
append-only audit log of uploaded documents.
"""

from crisis_trainer.models import db, iso, new_id, utcnow

# ── Constants ─────────────────────────────────────────────────────────────────

ROLE_COUNSELOR = "counselor"
ROLE_SUPERVISOR = "supervisor"
VALID_ROLES = frozenset({ROLE_COUNSELOR, ROLE_SUPERVISOR})


class Account(db.Model):
    __tablename__ = "accounts"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    vector_store_id = db.Column(
        db.String(128),
        nullable=True,
        comment="Retrieval index holding this account's reference procedures",
    )
    procedure_history = db.Column(
        db.JSON,
        nullable=False,
        default=list,
        comment="Append-only list of {filename, uploaded_at, characters, file_id}",
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def append_procedure(self, entry: dict) -> None:
        """Append a history entry.  A new list is assigned so the JSON column is flagged dirty."""
        self.procedure_history = [*(self.procedure_history or []), entry]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "vector_store_id": self.vector_store_id,
            "procedure_history": list(self.procedure_history or []),
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<Account {self.id} {self.name!r}>"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    external_id = db.Column(
        db.String(255),
        nullable=True,
        unique=True,
        comment="Identifier in a partner system; unique so get-or-create is race safe",
    )
    display_name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    role = db.Column(
        db.String(20),
        nullable=False,
        default=ROLE_COUNSELOR,
        comment="counselor | supervisor",
    )
    account_id = db.Column(
        db.String(36),
        db.ForeignKey("accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def is_supervisor(self) -> bool:
        return self.role == ROLE_SUPERVISOR

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "external_id": self.external_id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "account_id": self.account_id,
            "created_at": iso(self.created_at),
        }

    def __repr__(self) -> str:
        return f"<User {self.id} role={self.role}>"
