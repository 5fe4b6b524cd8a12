from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core.config import Settings, load_settings
from core.db import PoolManager
from core.health import HealthReporter
from core.logs import configure_logging
from core.migrate import Migrator
from users import router as users_router
from users.repository import RepoError, UserRepository


def create_app(
    *,
    settings: Settings | None = None,
    pool: PoolManager | None = None,
    migrator: Migrator | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        configure_logging(cfg.log_level)

        db_pool = pool or PoolManager(cfg.pool)
        await db_pool.open()
        try:
            # Schema must be current before any request is served.
            schema = migrator or Migrator.from_directory(cfg.migrations_dir)
            await schema.apply_pending(db_pool)

            app.state.pool = db_pool
            app.state.users = UserRepository(db_pool)
            app.state.health = HealthReporter(
                db_pool,
                timeout=cfg.health_timeout,
                degraded_after=cfg.health_degraded_after,
            )
            yield
        finally:
            await db_pool.close()

    app = FastAPI(title="User Service", lifespan=lifespan)
    app.add_exception_handler(RepoError, users_router.repo_error_handler)
    app.include_router(users_router.router, tags=["users"])

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        report = await request.app.state.health.check()
        return JSONResponse(
            status_code=200 if report.ok else 503,
            content=report.to_dict(),
        )

    return app


app = create_app()


def main() -> None:
    settings = load_settings()
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
