import asyncio
import csv
import io
import os
from dataclasses import asdict
from threading import Event, Lock, Thread
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request

from database import get_db_connection, init_db
from data_paths import DATA_ROOT, ensure_data_root
from services.categories import get_category_registry
from services.change_feed import ChangeFeedListener, NotificationBus, RefreshCoordinator, TriggerReason
from services.courier_rankings import rank_couriers
from services.order_source import SQLiteOrderSource, SourceFetchError
from services.reconciliation import EXPORT_FIELDS, ReconciliationEngine, ReportQuery, ViewMode
from services.settings import EngineSettings, load_engine_settings, read_json_file, write_json_file
from services.time_windows import ALL_TIME_FIELDS, TimeField, resolve_period

# Load environment variables from .env file
load_dotenv()

# --- App Initialization ---
app = Flask(__name__)
app.config['JSON_SORT_KEYS'] = False

ensure_data_root()

DATA_DIR = DATA_ROOT
SETTINGS_FILE = DATA_DIR / 'settings.json'

if not SETTINGS_FILE.exists():
    write_json_file(SETTINGS_FILE, {"timezone": "UTC", "default_period": "today", "view_mode": "active"})

_db_bootstrapped = False

_services_lock = Lock()
_services: Dict[str, Any] = {}

_loop_lock = Lock()
_loop: Optional[asyncio.AbstractEventLoop] = None
_loop_ready = Event()


@app.before_request
def _ensure_database_initialized():
    """Guarantee the SQLite schema exists before serving any request."""
    global _db_bootstrapped
    if _db_bootstrapped:
        return
    try:
        init_db()
        _db_bootstrapped = True
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to initialize database before request: %s", exc)


# --- Background event loop ---
def _event_loop_worker(loop: asyncio.AbstractEventLoop) -> None:
    asyncio.set_event_loop(loop)
    _loop_ready.set()
    loop.run_forever()


def _ensure_event_loop_started() -> asyncio.AbstractEventLoop:
    """Refreshes share one loop so in-flight computations can be coalesced."""
    global _loop
    with _loop_lock:
        if _loop is not None and _loop.is_running():
            return _loop
        _loop_ready.clear()
        loop = asyncio.new_event_loop()
        thread = Thread(target=_event_loop_worker, args=(loop,), name='ReconciliationLoop', daemon=True)
        thread.start()
        _loop_ready.wait(timeout=5)
        _loop = loop
        return loop


def _run_async(coroutine, timeout: Optional[float] = None):
    loop = _ensure_event_loop_started()
    future = asyncio.run_coroutine_threadsafe(coroutine, loop)
    return future.result(timeout=timeout)


# --- Service wiring ---
def _load_settings() -> EngineSettings:
    return load_engine_settings(SETTINGS_FILE)


def get_reconciliation_services() -> Dict[str, Any]:
    with _services_lock:
        if not _services:
            settings = _load_settings()
            engine = ReconciliationEngine(
                SQLiteOrderSource(lambda: get_db_connection()),
                registry=get_category_registry(),
                timezone_name=settings.timezone,
                fetch_timeout=settings.fetch_timeout_seconds,
            )
            coordinator = RefreshCoordinator(engine)
            bus = NotificationBus()
            _services.update(
                settings=settings,
                engine=engine,
                coordinator=coordinator,
                bus=bus,
                listener=ChangeFeedListener(bus, coordinator),
            )
        return _services


def reset_reconciliation_services() -> None:
    with _services_lock:
        _services.clear()


def _request_timeout(settings: EngineSettings) -> float:
    return settings.fetch_timeout_seconds + 5


def _courier_ids(payload: Dict[str, Any]):
    raw = payload.get('courierIds', payload.get('courier_ids'))
    if raw in (None, ''):
        single = payload.get('courierId') or payload.get('courier_id')
        raw = [single] if single else []
    if isinstance(raw, str):
        raw = [value.strip() for value in raw.split(',')]
    if not isinstance(raw, (list, tuple)):
        raise ValueError('courierIds must be a list of courier ids')
    return tuple(str(value) for value in raw if value not in (None, ''))


def build_query(payload: Dict[str, Any], settings: EngineSettings) -> ReportQuery:
    inclusion = payload.get('inclusion')
    fields = tuple(TimeField.parse(value) for value in inclusion) if inclusion else ALL_TIME_FIELDS
    window = resolve_period(
        payload.get('period') or settings.default_period,
        timezone_name=settings.timezone,
        start=payload.get('start') or payload.get('startDate'),
        end=payload.get('end') or payload.get('endDate'),
        inclusion=fields,
        half_open=bool(payload.get('halfOpen', False)),
    )
    return ReportQuery(
        window=window,
        courier_ids=_courier_ids(payload),
        view_mode=ViewMode.parse(payload.get('viewMode') or payload.get('view_mode') or settings.view_mode),
        legacy_assignment_fallback=settings.legacy_assignment_fallback,
    )


def _run_report(payload: Dict[str, Any], reason: TriggerReason = TriggerReason.PARAMETERS):
    services = get_reconciliation_services()
    settings = services['settings']
    query = build_query(payload, settings)
    coordinator = services['coordinator']
    return _run_async(coordinator.request(query, reason), timeout=_request_timeout(settings))


# --- Routes ---
@app.route('/api/reconciliation/categories', methods=['GET'])
def api_list_categories():
    return jsonify({'categories': get_category_registry().describe()})


@app.route('/api/reconciliation/reports/run', methods=['POST'])
def api_run_reconciliation_report():
    payload = request.get_json(force=True, silent=True) or {}
    try:
        report = _run_report(payload)
    except KeyError as exc:
        return jsonify({'message': str(exc)}), 404
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    except SourceFetchError as exc:
        app.logger.warning("Reconciliation fetch failed: %s", exc)
        return jsonify({'message': 'Order source unavailable; previous report retained.'}), 502
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to build reconciliation report: %s", exc)
        return jsonify({'message': 'Failed to generate reconciliation report.'}), 500
    if report is None:
        return jsonify({'report': None}), 202
    return jsonify({'report': report.to_dict()})


@app.route('/api/reconciliation/reports/export', methods=['POST'])
def api_export_reconciliation_report():
    payload = request.get_json(force=True, silent=True) or {}
    try:
        report = _run_report(payload)
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    except SourceFetchError as exc:
        app.logger.warning("Reconciliation export fetch failed: %s", exc)
        return jsonify({'message': 'Order source unavailable; nothing exported.'}), 502
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to export reconciliation report: %s", exc)
        return jsonify({'message': 'Failed to export reconciliation report.'}), 500
    if report is None:
        return jsonify({'records': []}), 202

    records = report.to_records()
    if (payload.get('format') or 'json').lower() != 'csv':
        return jsonify({'records': records})
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(EXPORT_FIELDS))
    writer.writeheader()
    writer.writerows(records)
    return Response(
        buffer.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=reconciliation.csv'},
    )


@app.route('/api/reconciliation/reports/latest', methods=['GET'])
def api_latest_reconciliation_report():
    report = get_reconciliation_services()['coordinator'].report
    if report is None:
        return jsonify({'message': 'No report has been generated yet.'}), 404
    return jsonify({'report': report.to_dict()})


@app.route('/api/reconciliation/rankings', methods=['POST'])
def api_courier_rankings():
    payload = request.get_json(force=True, silent=True) or {}
    try:
        report = _run_report(payload)
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    except SourceFetchError as exc:
        app.logger.warning("Ranking fetch failed: %s", exc)
        return jsonify({'message': 'Order source unavailable.'}), 502
    except Exception as exc:  # pragma: no cover
        app.logger.exception("Failed to rank couriers: %s", exc)
        return jsonify({'message': 'Failed to rank couriers.'}), 500
    if report is None:
        return jsonify({'rankings': []}), 202
    courier_ids = report.query.courier_ids or None
    rankings = rank_couriers(report.snapshots, courier_ids)
    return jsonify({'rankings': [entry.to_dict() for entry in rankings]})


@app.route('/api/orders/changes', methods=['POST'])
def api_order_change():
    payload = request.get_json(force=True, silent=True) or {}
    services = get_reconciliation_services()
    listener = services['listener']
    try:
        notification = _run_async(listener.handle(payload), timeout=_request_timeout(services['settings']))
    except ValueError as exc:
        return jsonify({'message': str(exc)}), 400
    except SourceFetchError as exc:
        app.logger.warning("Refresh after change notification failed: %s", exc)
        return jsonify({'status': 'accepted', 'refreshed': False}), 202
    if notification is None:
        return jsonify({'status': 'ignored'})
    return jsonify({'status': 'accepted', 'notification': notification.to_dict()})


@app.route('/api/notifications', methods=['GET'])
def api_notifications():
    try:
        cursor = int(request.args.get('since', 0))
    except ValueError:
        return jsonify({'message': 'since must be an integer'}), 400
    bus = get_reconciliation_services()['bus']
    return jsonify({'notifications': [item.to_dict() for item in bus.since(cursor)]})


@app.route('/api/settings', methods=['GET'])
def api_settings():
    settings = read_json_file(SETTINGS_FILE)
    return jsonify({'settings': settings, 'effective': asdict(_load_settings())})


def main():
    port = int(os.getenv('ROUTELEDGER_PORT', '5002'))
    app.run(host='0.0.0.0', port=port, debug=False)

if __name__ == '__main__':
    init_db()
    main()
