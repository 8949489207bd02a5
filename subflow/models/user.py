from sqlalchemy import func
from subflow.extensions import db
from subflow.utils.identifiers import new_id

class User(db.Model):
    __tablename__ = "users"

    # Identity is issued upstream (auth layer); we only mirror what the saga needs
    id = db.Column(db.String(64), primary_key=True, default=new_id)
    email = db.Column(db.String(255), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<User id={self.id!r} email={self.email!r}>"
