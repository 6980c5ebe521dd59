"""Periodic maintenance run by Flask-APScheduler."""
from .auth import cleanup_expired_sessions
from .services.erasure import resume_pending_erasures
from .services.lifecycle import purge_due_files
from .services.recovery import purge_expired_tokens


def purge_trash(app):
    with app.app_context():
        purge_due_files()


def cleanup_recovery_tokens(app):
    with app.app_context():
        tokens = purge_expired_tokens()
        sessions = cleanup_expired_sessions()
        if tokens or sessions:
            app.logger.info(f"Removed {tokens} expired recovery tokens and {sessions} expired sessions")


def resume_erasures(app):
    with app.app_context():
        reports = resume_pending_erasures()
        unfinished = [report.user_uuid for report in reports if not report.completed]
        if unfinished:
            app.logger.warning(f"Account erasure still unfinished for users: {', '.join(unfinished)}")


def register_jobs(scheduler, app):
    scheduler.add_job(id='purge_trash', func=purge_trash, args=[app],
                      trigger='interval', minutes=app.config['PURGE_INTERVAL_MINUTES'])
    scheduler.add_job(id='cleanup_recovery_tokens', func=cleanup_recovery_tokens, args=[app],
                      trigger='interval', hours=1)
    scheduler.add_job(id='resume_erasures', func=resume_erasures, args=[app],
                      trigger='interval', minutes=app.config['ERASURE_RETRY_MINUTES'])
