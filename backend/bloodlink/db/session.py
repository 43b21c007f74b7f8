from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from bloodlink.config import get_settings

settings = get_settings()

# SQLite (tests, local runs) uses a single-connection pool that rejects sizing args
_engine_kwargs = {} if settings.DATABASE_URL.startswith("sqlite") else {"pool_size": 20, "max_overflow": 10}

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, **_engine_kwargs)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    # notification_service imports this module
    from bloodlink.services.notification_service import deliver_pending, discard_pending

    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_pending(session)
            raise
        else:
            # Only committed changes are announced
            await deliver_pending(session)
        finally:
            await session.close()
