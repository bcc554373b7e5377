from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from flowdesk.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=False)

# Keep loaded history rows usable after commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


# Every history model registers itself on this Base
class Base(DeclarativeBase):
    pass
