"""Database configuration and initialization."""
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Integer, JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base

# Create SQLAlchemy base
Base = declarative_base()

# BIGSERIAL on PostgreSQL, INTEGER (rowid alias) on SQLite
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')
JSONType = JSON().with_variant(JSONB, 'postgresql')

# Global session and engine
engine = None
db_session = None


def utcnow():
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db(app):
    """Initialize database connection."""
    global engine, db_session

    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    engine_kwargs = {
        'echo': app.config.get('SQLALCHEMY_ECHO', False),
        'pool_pre_ping': True,  # Enable connection health checks
    }
    if not database_uri.startswith('sqlite'):
        engine_kwargs.update(pool_size=10, max_overflow=20)

    engine = create_engine(database_uri, **engine_kwargs)

    db_session = scoped_session(
        sessionmaker(autocommit=False, autoflush=False, bind=engine)
    )

    Base.query = db_session.query_property()

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        """Close database session and rollback on error."""
        if exception:
            db_session.rollback()
        db_session.remove()


def get_session():
    """Get database session."""
    return db_session


def get_engine():
    """Get the engine bound by init_db."""
    return engine
