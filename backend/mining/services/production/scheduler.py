import time
from typing import Set

from mining import socketio
from mining.models import utcnow
from mining.socketio_events import notify_user


_started_apps: Set[int] = set()


def run_settlement_tick(app, now=None) -> dict:
    """Settle every active session once and push pauses to their owners.

    Once the day's YLD quota is spent, open YLD sessions are stopped too.

    Works purely from persisted last_settlement_time, so a tick after a
    crash or restart picks up exactly where the last committed one ended.
    """
    with app.app_context():
        engine = app.extensions['production']
        summary = engine.settle_due(now)
        for paused in summary['paused']:
            notify_user(
                paused['user_id'],
                'session_paused',
                {'session_id': paused['session_id'], 'id': paused['id'], 'reason': paused['reason']},
            )
        if engine.quota.is_exhausted(now or utcnow()):
            stopped = engine.handle_quota_exhausted(now)
            summary['quota_stopped'] = stopped['settlement_details']
            for detail in stopped['settlement_details']:
                notify_user(
                    detail['user'],
                    'session_stopped',
                    {'session_id': detail['session_id'], 'reason': 'yld_exhausted', 'output': detail['actual_get']},
                )
        app.logger.info(
            f"[settle-tick] settled={len(summary['settled'])} paused={len(summary['paused'])} "
            f"busy={len(summary['busy'])} failed={len(summary['failed'])}"
        )
        return summary


def start_settlement_scheduler(app) -> bool:
    """Start the background settlement loop for ``app``.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - No-ops when SETTLEMENT_TICK_SEC is 0
    - Ensures a single loop per app
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return False
    tick = int(app.config.get('SETTLEMENT_TICK_SEC', 60))
    if tick <= 0:
        return False
    if id(app) in _started_apps:
        app.logger.info("[scheduler-skip] settlement loop already running")
        return False
    _started_apps.add(id(app))
    app.logger.info(f"[scheduler-start] tick={tick}s")

    def _worker(delay: int):
        hb = int(app.config.get('SETTLEMENT_HEARTBEAT_SEC', 0))
        while True:
            if hb > 0:
                slept = 0
                while slept < delay:
                    step = min(hb, delay - slept)
                    time.sleep(step)
                    slept += step
                    app.logger.info(f"[scheduler-heartbeat] next_tick_in={max(0, delay - slept)}s")
            else:
                time.sleep(delay)
            try:
                run_settlement_tick(app)
            except Exception:
                # Nothing was committed for the failed session; next tick retries it
                app.logger.exception("[settle-tick] tick failed")

    socketio.start_background_task(_worker, tick)
    return True
