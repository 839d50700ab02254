# routes.py
from fastapi import FastAPI
from controller.chat_controller import chat_router
from controller.inspect_controller import inspect_router


def register_routes(app: FastAPI) -> None:
    """Register & Access control controllers here."""
    app.include_router(chat_router)
    app.include_router(inspect_router)
