import uvicorn

from rac_rewards_api.core.settings import settings


def main() -> None:
    uvicorn.run(
        "rac_rewards_api.app:create_app",
        factory=True,
        reload=settings.environment == "development",
        log_config=None,
    )


if __name__ == "__main__":
    main()
