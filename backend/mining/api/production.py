from flask import Blueprint, jsonify, request, current_app, url_for
from flask_login import login_required, current_user

from mining.errors import Busy, InvalidRequest, ProductionError
from mining.models import MiningSession, Tool, SessionStatus, ToolStatus, ToolType, ResourceType, MiningType
from mining.socketio_events import notify_user


production = Blueprint('production', __name__)


def _engine():
    return current_app.extensions['production']


def _ok(data=None, message: str = 'ok', status: int = 200):
    return jsonify({'success': True, 'message': message, 'data': data}), status


def _payload() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest('Request body must be a JSON object')
    return data


def _require(data: dict, *fields):
    missing = [f for f in fields if data.get(f) in (None, '', [])]
    if missing:
        raise InvalidRequest(f"Missing required field(s): {', '.join(missing)}", {'fields': missing})
    return [data[f] for f in fields]


def _tool_ids(data: dict) -> list:
    ids = data.get('tool_ids')
    if ids is None:
        return []
    if not isinstance(ids, list):
        raise InvalidRequest('tool_ids must be a list', {'tool_ids': ids})
    return ids


def _notify(user_id, action: str, data=None) -> None:
    notify_user(user_id, 'production_update', {'action': action, 'data': data})


def _paginate(query, endpoint: str, stats=None):
    page = request.args.get('page', 1, type=int)
    per_page = request.args.get('page_size', current_app.config.get('PAGE_SIZE', 20), type=int)
    pagination = query.paginate(
        page=page,
        per_page=per_page,
        max_per_page=current_app.config.get('MAX_PAGE_SIZE', 100),
        error_out=False,
    )
    args = {k: v for k, v in request.args.items() if k != 'page'}
    return {
        'count': pagination.total,
        'next': url_for(endpoint, page=pagination.next_num, **args) if pagination.has_next else None,
        'previous': url_for(endpoint, page=pagination.prev_num, **args) if pagination.has_prev else None,
        'results': pagination.items,
        'stats': stats,
    }


def _enum_arg(name: str, enum_cls):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        raise InvalidRequest(f'Unknown {name}: {raw!r}', {name: raw})


@production.errorhandler(ProductionError)
def handle_production_error(e: ProductionError):
    if e.http_status >= 500:
        current_app.logger.warning(f"[api-error] path={request.path} error={e.code} message={e.message}")
    else:
        current_app.logger.info(f"[api-reject] path={request.path} error={e.code}")
    resp = jsonify(e.to_dict())
    resp.status_code = e.http_status
    if isinstance(e, Busy):
        resp.headers['Retry-After'] = '1'
    return resp


# ---- mining ----

@production.route('/mining/self/start/', methods=['POST'])
@login_required
def start_self_mining():
    data = _payload()
    land_id, = _require(data, 'land_id')
    result = _engine().start_self_mining(current_user.id, land_id, _tool_ids(data))
    _notify(current_user.id, 'start', result['session'])
    return _ok(result, 'Self mining started', 201)


@production.route('/mining/work/with-tools/', methods=['POST'])
@login_required
def start_hired_with_tool():
    data = _payload()
    land_id, = _require(data, 'land_id')
    result = _engine().start_hired_with_tool(current_user.id, land_id, _tool_ids(data))
    _notify(current_user.id, 'start', result['session'])
    return _ok(result, 'Hired mining started', 201)


@production.route('/mining/work/without-tools/', methods=['POST'])
@login_required
def start_hired_without_tool():
    data = _payload()
    land_id, = _require(data, 'land_id')
    result = _engine().start_hired_without_tool(current_user.id, land_id)
    _notify(current_user.id, 'start', result['session'])
    return _ok(result, 'Hired mining started with a deposited tool', 201)


@production.route('/mining/self/add-tools/', methods=['POST'])
@login_required
def add_tool():
    data = _payload()
    session_id, tool_id = _require(data, 'session_id', 'tool_id')
    result = _engine().add_tool(current_user.id, session_id, tool_id)
    _notify(current_user.id, 'add_tool', result['session'])
    return _ok(result, 'Tool added')


@production.route('/mining/self/remove-tools/', methods=['POST'])
@login_required
def remove_tool():
    data = _payload()
    session_id, tool_id = _require(data, 'session_id', 'tool_id')
    result = _engine().remove_tool(current_user.id, session_id, tool_id)
    _notify(current_user.id, 'remove_tool', result)
    return _ok(result, 'Tool removed')


@production.route('/mining/recruit/deposit-tools/', methods=['POST'])
@login_required
def deposit_tools():
    data = _payload()
    land_id, = _require(data, 'land_id')
    result = _engine().deposit_tools(current_user.id, land_id, _tool_ids(data))
    return _ok(result, 'Tools deposited')


@production.route('/mining/recruit/withdraw-tools/', methods=['POST'])
@login_required
def withdraw_tools():
    data = _payload()
    land_id, = _require(data, 'land_id')
    result = _engine().withdraw_tools(current_user.id, land_id, _tool_ids(data))
    return _ok(result, 'Tools withdrawn')


@production.route('/mining/pause/', methods=['POST'])
@login_required
def pause_mining():
    session_id, = _require(_payload(), 'session_id')
    result = _engine().pause(current_user.id, session_id)
    _notify(current_user.id, 'pause', result['session'])
    return _ok(result, 'Mining paused')


@production.route('/mining/resume/', methods=['POST'])
@login_required
def resume_mining():
    session_id, = _require(_payload(), 'session_id')
    result = _engine().resume(current_user.id, session_id)
    _notify(current_user.id, 'resume', result['session'])
    return _ok(result, 'Mining resumed')


# ---- synthesis ----

@production.route('/synthesis/tool/', methods=['POST'])
@login_required
def synthesize_tool():
    data = _payload()
    tool_type, = _require(data, 'tool_type')
    result = _engine().synthesize_tool(current_user.id, tool_type, data.get('quantity', 1))
    return _ok(result, f"Synthesized {result['succeeded']}/{result['attempted']} {tool_type}", 201)


@production.route('/synthesis/bricks/', methods=['POST'])
@login_required
def synthesize_bricks():
    data = _payload()
    result = _engine().synthesize_brick(current_user.id, data.get('quantity', 1))
    return _ok(result, f"Synthesized {result['succeeded']}/{result['attempted']} brick batches", 201)


@production.route('/synthesis/recipes/', methods=['GET'])
@login_required
def list_recipes():
    return _ok(_engine().recipes())


# ---- output ----

@production.route('/collect/', methods=['POST'])
@login_required
def collect_output():
    session_id, = _require(_payload(), 'session_id')
    result = _engine().collect(current_user.id, session_id)
    _notify(current_user.id, 'collect', result)
    return _ok(result, f"Collected {result['collected_amount']} {result['resource_type']}")


@production.route('/stop/', methods=['POST'])
@login_required
def stop_production():
    session_id, = _require(_payload(), 'session_id')
    result = _engine().stop(current_user.id, session_id)
    _notify(current_user.id, 'stop', result['session'])
    return _ok(result, 'Production stopped')


@production.route('/stop-all/', methods=['POST'])
@login_required
def stop_all_production():
    result = _engine().stop_all(current_user.id)
    if result['stopped_count']:
        _notify(current_user.id, 'stop_all', result)
    return _ok(result, f"Stopped {result['stopped_count']} session(s)")


# ---- reads ----

@production.route('/sessions/', methods=['GET'])
@login_required
def list_sessions():
    engine = _engine()
    query = MiningSession.query.filter_by(user_id=current_user.id)
    status = _enum_arg('status', SessionStatus)
    if status:
        query = query.filter_by(status=status)
    resource_type = _enum_arg('resource_type', ResourceType)
    if resource_type:
        query = query.filter_by(resource_type=resource_type)
    mining_type = _enum_arg('mining_type', MiningType)
    if mining_type:
        query = query.filter_by(mining_type=mining_type)
    page = _paginate(query.order_by(MiningSession.id.desc()), 'production.list_sessions',
                     engine.session_stats(current_user.id))
    page['results'] = [engine.session_payload(s) for s in page['results']]
    return _ok(page)


@production.route('/sessions/<session_id>/rate-history/', methods=['GET'])
@login_required
def session_rate_history(session_id):
    return _ok(_engine().rate_history(current_user.id, session_id))


@production.route('/tools/', methods=['GET'])
@login_required
def list_tools():
    query = Tool.query.filter_by(owner_id=current_user.id)
    tool_type = _enum_arg('tool_type', ToolType)
    if tool_type:
        query = query.filter_by(tool_type=tool_type)
    status = _enum_arg('status', ToolStatus)
    if status:
        query = query.filter_by(status=status)
    page = _paginate(query.order_by(Tool.id), 'production.list_tools', _engine().tools.stats(current_user.id))
    page['results'] = [t.to_dict() for t in page['results']]
    return _ok(page)


@production.route('/resources/', methods=['GET'])
@login_required
def list_resources():
    return _ok(_engine().resources(current_user.id))


@production.route('/stats/', methods=['GET'])
@login_required
def production_stats():
    return _ok(_engine().stats(current_user.id))


@production.route('/food-status/', methods=['GET'])
@login_required
def food_status():
    return _ok(_engine().food_status(current_user.id))


@production.route('/mining/pre-check/', methods=['GET'])
@login_required
def mining_pre_check():
    return _ok(_engine().pre_check(current_user.id))


@production.route('/mining/summary/', methods=['GET'])
@login_required
def mining_summary():
    return _ok(_engine().summary(current_user.id))


# ---- daily yld quota ----

@production.route('/yld/status/', methods=['GET'])
@login_required
def yld_status():
    return _ok(_engine().quota_status(current_user.id))


@production.route('/yld/check-before-mining/', methods=['GET'])
@login_required
def yld_check_before_mining():
    return _ok(_engine().check_before_mining())


@production.route('/yld/handle-exhausted/', methods=['POST'])
@login_required
def yld_handle_exhausted():
    result = _engine().handle_quota_exhausted()
    for detail in result['settlement_details']:
        _notify(detail['user'], 'stop', {'session_id': detail['session_id'], 'reason': 'yld_exhausted'})
    return _ok(result, result['message'])
