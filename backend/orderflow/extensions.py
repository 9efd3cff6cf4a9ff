# Overview: Flask extension instances for database, migrations, and realtime fan-out.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .realtime import RealtimeBroker

db = SQLAlchemy()
migrate = Migrate()
realtime = RealtimeBroker()
