from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.services.payment_requests import expire_due_payment_requests
from app.services.runtime import build_runtime


def main():
    configure_logging(settings.ENV, settings.LOG_LEVEL, settings.LOG_JSON)
    runtime = build_runtime()
    db = SessionLocal()
    try:
        expired = expire_due_payment_requests(db, runtime.hooks)
        db.commit()
        print(f"ok: payment request expiration completed (expired={expired})")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
