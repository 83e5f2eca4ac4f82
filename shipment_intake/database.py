from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from shipment_intake.config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def import_models() -> None:
    # Import all models so Base.metadata knows about them
    import shipment_intake.models.customer  # noqa: F401
    import shipment_intake.models.inventory  # noqa: F401
    import shipment_intake.models.extraction  # noqa: F401
    import shipment_intake.models.outbound  # noqa: F401
    import shipment_intake.models.review  # noqa: F401


def init_db(bind=None) -> None:
    import_models()
    Base.metadata.create_all(bind=bind or engine)
