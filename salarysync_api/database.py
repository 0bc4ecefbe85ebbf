from dotenv import load_dotenv

from core.db import fastapi_session

# Load .env for local development
load_dotenv()


def get_auth_db():
    yield from fastapi_session("auth")


def get_hr_db():
    yield from fastapi_session("hr")


def get_payroll_db():
    yield from fastapi_session("payroll")
