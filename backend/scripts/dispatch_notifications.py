from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.services.notifications import dispatch_pending_notifications


def main():
    configure_logging()
    db = SessionLocal()
    try:
        result = dispatch_pending_notifications(db)
        db.commit()
        print(
            "ok: envio de notificaciones completado "
            f"(processed={result['processed']}, sent={result['sent']}, retried={result['retried']}, "
            f"failed={result['failed']}, skipped={result['skipped']})"
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
