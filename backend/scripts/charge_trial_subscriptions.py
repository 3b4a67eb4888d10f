from app.core.logging import configure_logging
from app.db.session import SessionLocal
from app.services.trial_charger import charge_expired_trials


def main():
    configure_logging()
    db = SessionLocal()
    try:
        result = charge_expired_trials(db)
        db.commit()
        failed = sum(1 for r in result["results"] if r["status"] != "charged")
        print(
            "ok: cobro de trials completado "
            f"(processed={result['processed']}, failed={failed}, deleted={len(result['deleted'])}, "
            f"reminders={result['reminders']})"
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
