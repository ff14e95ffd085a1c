import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from creditsync.config import settings  # noqa: E402
from creditsync.database.connection import engine  # noqa: E402
from creditsync.logging_config import setup_logging  # noqa: E402
from creditsync.models import Base  # noqa: E402

logger = logging.getLogger("creditsync.scripts.init_db")


def init_db():
    """데이터베이스 초기화 (테이블/부분 유니크 인덱스 생성)"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info(f"Database initialized: {engine.url.render_as_string(hide_password=True)}")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    init_db()
