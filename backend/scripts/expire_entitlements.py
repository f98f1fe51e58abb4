from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.services.entitlements import expire_due_entitlements
from app.services.runtime import build_runtime


def main():
    configure_logging(settings.ENV, settings.LOG_LEVEL, settings.LOG_JSON)
    runtime = build_runtime()
    db = SessionLocal()
    try:
        expired = expire_due_entitlements(db, runtime)
        db.commit()
        print(f"ok: entitlement expiration completed (expired={expired})")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
