from datetime import datetime

from workshop import db


class KeyValueEntry(db.Model):
    __tablename__ = 'key_value_entry'
    key        = db.Column(db.String(200), primary_key=True)
    value      = db.Column(db.Text, nullable=False, default='')
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow,
                           onupdate=datetime.utcnow)
