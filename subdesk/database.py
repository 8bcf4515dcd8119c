"""Database configuration and lifecycle."""
from flask import current_app
from sqlalchemy import BigInteger, Integer, create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker, declarative_base

# Create SQLAlchemy base
Base = declarative_base()

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')


class Database:
    """
    Engine and scoped session owned by one Flask application.

    Constructed once at process start and bound with ``init_app``; ``dispose``
    closes the connection pool at shutdown.
    """

    def __init__(self, app=None):
        self.engine = None
        self.session = None

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Create the engine and session factory from app config."""
        database_uri = app.config['SQLALCHEMY_DATABASE_URI']
        is_sqlite = database_uri.startswith('sqlite')

        engine_options = {
            'echo': app.config.get('SQLALCHEMY_ECHO', False),
            'pool_pre_ping': True,  # Enable connection health checks
        }
        if is_sqlite:
            # Concurrent writers wait on the file lock instead of failing at once
            engine_options['connect_args'] = {'timeout': 30, 'check_same_thread': False}
        else:
            engine_options['pool_size'] = app.config.get('DB_POOL_SIZE', 10)
            engine_options['max_overflow'] = app.config.get('DB_MAX_OVERFLOW', 20)

        self.engine = create_engine(database_uri, **engine_options)

        if is_sqlite:
            @event.listens_for(self.engine, 'connect')
            def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute('PRAGMA foreign_keys=ON')
                cursor.close()

        self.session = scoped_session(
            sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        )

        app.extensions['database'] = self

        # Register teardown
        @app.teardown_appcontext
        def shutdown_session(exception=None):
            """Close database session and rollback on error."""
            if exception:
                self.session.rollback()
            self.session.remove()

        return self

    def create_all(self):
        # Import models so every table is registered on Base.metadata
        import subdesk.models  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        import subdesk.models  # noqa: F401
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self):
        """Release pooled connections (process shutdown)."""
        if self.session is not None:
            self.session.remove()
        if self.engine is not None:
            self.engine.dispose()


def get_database(app=None) -> Database:
    """Return the Database bound to ``app`` (or the current app)."""
    app = app or current_app
    return app.extensions['database']


def get_session():
    """Get database session."""
    return get_database().session
