"""Run the job API with uvicorn: python -m transcoder"""

import uvicorn

from transcoder.core.config import settings


def main() -> None:
    uvicorn.run(
        "transcoder.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
