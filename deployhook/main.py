"""
DeployHookServer：接收 GitHub push Webhook，校验签名并匹配配置后，在后台同步仓库并执行部署命令。
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from deployhook.config import ConfigError, Settings, load_settings
from deployhook.dispatch import Dispatcher
from deployhook.github import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    PayloadError,
    parse_payload,
    verify_signature,
)
from deployhook.router import BranchMismatch, NoSuchRepo, Trigger, route

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, dispatcher: Dispatcher | None = None) -> FastAPI:
    if settings is None:
        load_dotenv()
        settings = load_settings()
    if dispatcher is None:
        dispatcher = Dispatcher(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        if dispatcher.pending:
            logger.info("等待进行中的部署任务结束 pending=%s", dispatcher.pending)
        await dispatcher.join()

    app = FastAPI(title="DeployHookServer", lifespan=lifespan)
    app.state.settings = settings
    app.state.dispatcher = dispatcher

    @app.get("/")
    async def root():
        return {"service": "DeployHookServer", "webhook": "POST /webhook"}

    @app.post("/webhook")
    async def webhook(request: Request) -> Response:
        body = await request.body()
        signature_256 = request.headers.get(SIGNATURE_HEADER, "")
        event_name = request.headers.get(EVENT_HEADER, "")
        delivery = request.headers.get(DELIVERY_HEADER, "")
        client_host = request.client.host if request.client else ""
        logger.debug("收到 webhook event=%s delivery=%s size=%s", event_name, delivery, len(body))

        if not verify_signature(settings.secret, body, signature_256):
            logger.warning(
                "Webhook 签名校验失败 client=%s signature_present=%s delivery=%s",
                client_host,
                bool(signature_256),
                delivery,
            )
            return JSONResponse(status_code=401, content={"error": "invalid signature"})

        try:
            event = parse_payload(body)
        except PayloadError as e:
            logger.warning("解析 payload 失败 delivery=%s: %s", delivery, e)
            return JSONResponse(status_code=400, content={"error": "invalid payload"})

        if event.is_empty:
            logger.warning("payload 缺少 repository.full_name 与 ref delivery=%s", delivery)
            return JSONResponse(status_code=400, content={"error": "invalid payload"})

        decision = route(event, settings.repos)
        if isinstance(decision, Trigger):
            logger.info(
                "匹配成功，触发部署 repo=%s ref=%s sender=%s commits=%s delivery=%s",
                event.repository,
                event.ref,
                event.sender or "unknown",
                event.commit_count,
                delivery,
            )
            dispatcher.submit(decision.repository, decision.rule)
        elif isinstance(decision, BranchMismatch):
            logger.info(
                "分支不匹配，忽略 repo=%s received_ref=%s expected_ref=%s",
                decision.repository,
                decision.received_ref,
                decision.expected_ref,
            )
        elif isinstance(decision, NoSuchRepo):
            logger.info(
                "仓库未配置，忽略 repo=%s configured=%s",
                decision.repository,
                list(settings.repos),
            )
        return JSONResponse(status_code=200, content={"ok": True, "event": event_name})

    return app


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("配置加载失败: %s", e)
        raise SystemExit(1) from e
    logging.getLogger().setLevel(settings.log_level)

    app = create_app(settings)
    ssl_kwargs = {}
    if settings.tls is not None:
        ssl_kwargs = {"ssl_certfile": settings.tls.cert_path, "ssl_keyfile": settings.tls.key_path}
        logger.info("HTTPS 已启用 cert=%s", settings.tls.cert_path)
    else:
        logger.info("未配置 TLS，以 HTTP 模式运行")
    logger.info("DeployHookServer 启动 host=%s port=%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None, **ssl_kwargs)


if __name__ == "__main__":
    main()
