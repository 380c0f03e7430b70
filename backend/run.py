"""
TutorChat Backend Runner
Run with: python run.py
"""

import uvicorn
from tutorchat.config import settings


if __name__ == "__main__":
    print(f"""
    TutorChat messaging API

    Starting server at http://{settings.HOST}:{settings.PORT}

    API Documentation: http://localhost:{settings.PORT}/docs
    """)

    uvicorn.run(
        "tutorchat.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
