"""
Point d'entrée en ligne de commande.

Usage:
    python -m shopease              # serveur uvicorn (défaut)
    python -m shopease init-db      # crée les tables manquantes
    python -m shopease expire       # un passage du balayage d'expiration des paiements

Variables lues par le serveur:
- PORT (8000 par défaut), HOST (0.0.0.0)
- UVICORN_RELOAD: reload auto en dev ("1"/"true"/"yes")
- LOG_LEVEL: niveau de logs ("info", "debug"...)
"""
import argparse
import logging
import os

import uvicorn


def serve() -> None:
    reload_flag = os.environ.get("UVICORN_RELOAD", "").lower() in ("1", "true", "yes")
    uvicorn.run(
        "shopease.asgi:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 8000)),
        reload=reload_flag,
        log_level=os.environ.get("LOG_LEVEL", "info"),
        proxy_headers=True,
    )


def init_db() -> None:
    from shopease.infra import database
    database.configure()
    database.create_all()
    logging.getLogger(__name__).info("Tables created")


def expire() -> None:
    from shopease.payments.service import expire_stale_sessions
    counts = expire_stale_sessions()
    print(f"Sessions expirées: {counts['sessions']}, commandes sans QR expirées: {counts['orders']}")


COMMANDS = {"serve": serve, "init-db": init_db, "expire": expire}


if __name__ == "__main__":
    parser = argparse.ArgumentParser(prog="python -m shopease")
    parser.add_argument("command", nargs="?", default="serve", choices=sorted(COMMANDS))
    args = parser.parse_args()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "info").upper())
    COMMANDS[args.command]()
