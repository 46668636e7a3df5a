# workshop/jobcards/routes.py
"""JSON endpoints over the job card engine.

Push events come from outside the process: a transport handed to
``PushChannel`` delivers ``commentAdded`` and ``jobUpdated`` while a feed is
open.  The default local transport never delivers anything by itself.
"""

from flask import Blueprint, current_app, jsonify, request

from workshop.api.client import ApiError, AuthError
from workshop.engine import Notice, Role
from workshop.feed import ActivityFeed, PushChannel
from workshop.jobcards.utils import ROLE_HEADER, USER_HEADER, build_services, make_engine, request_token

bp = Blueprint('jobcards', __name__)

# shared by every feed opened in this process; set channel.transport to connect it
channel = PushChannel()

CAPTURE_FIELDS = ('subOptionValues', 'comments', 'partsUsed')


def _add_service(engine, body):
    decision = engine.add_service(body.get('service') or {})
    if decision is None or not decision.requires_detail_capture:
        return decision is not None
    if decision.via == 'oilLegacy' and 'details' in body:
        return engine.confirm_oil_details(body['details'])
    if decision.via == 'generic' and any(k in body for k in CAPTURE_FIELDS):
        return engine.confirm_service_details(
            body.get('subOptionValues'), body.get('comments'), body.get('partsUsed'))
    # details still to be captured, see pendingCapture in the view
    return True


ACTIONS = {
    'select-customer':       lambda e, b: e.select_customer(b.get('customerId')),
    'select-vehicle':        lambda e, b: e.select_vehicle(b.get('vehicleId')),
    'select-technician':     lambda e, b: e.select_technician(b.get('technicianId')),
    'select-supervisor':     lambda e, b: e.select_supervisor(b.get('supervisorId')),
    'create-customer':       lambda e, b: e.create_customer(b),
    'create-vehicle':        lambda e, b: e.create_vehicle(b),
    'set-notes':             lambda e, b: e.set_notes(b.get('notes')),
    'set-overall-comment':   lambda e, b: e.set_overall_comment(b.get('comment')),
    'add-service':           _add_service,
    'add-inventory-item':    lambda e, b: e.add_inventory_item(b.get('item') or {}),
    'add-custom-service':    lambda e, b: e.add_custom_service(
        b.get('name'), b.get('cost'), b.get('estimatedTime', ''), b.get('subOptions') or ()),
    'delete-custom-service': lambda e, b: e.delete_custom_service(b.get('entryId')),
    'toggle-completed':      lambda e, b: e.toggle_completed(b.get('lineId')),
    'set-price':             lambda e, b: e.set_price(b.get('lineId'), b.get('price')),
    'set-duration':          lambda e, b: e.set_duration(b.get('lineId'), b.get('estimatedTime')),
    'remove-service':        lambda e, b: e.remove_service(b.get('lineId')),
    'edit-oil-details':      lambda e, b: e.edit_oil_details(b.get('lineId'), b.get('details') or {}),
    'edit-service-details':  lambda e, b: e.edit_service_details(
        b.get('lineId'), b.get('subOptionValues'), b.get('comments'), b.get('partsUsed')),
    'save':                  lambda e, b: e.save(),
    'start-work':            lambda e, b: e.start_work(),
    'mark-complete':         lambda e, b: e.mark_complete(),
    'delete':                lambda e, b: e.delete(),
}


def _respond(success, view, notices, **extra):
    notices = [n.to_dict() if isinstance(n, Notice) else n for n in notices]
    if any(n.get('redirect') for n in notices):
        status = 401
    elif not success:
        status = 400
    else:
        status = 200
    return jsonify(success=success, job=view, notices=notices, **extra), status


def _api_failure(e: ApiError):
    cfg = current_app.config
    if isinstance(e, AuthError):
        notice = Notice('error', str(e), redirect=cfg['LOGIN_URL'], delay=cfg['AUTH_REDIRECT_DELAY'])
    else:
        notice = Notice('error', str(e))
    status = 401 if isinstance(e, AuthError) else (e.status if e.status and e.status < 500 else 502)
    return jsonify(success=False, job=None, notices=[notice.to_dict()]), status


def _feed(job_id, services, on_job_updated=None):
    cfg = current_app.config
    return ActivityFeed(job_id, services.comments, channel,
                        on_job_updated=on_job_updated,
                        author=request.headers.get(USER_HEADER, ''),
                        role=Role.parse(request.headers[ROLE_HEADER]).value
                        if request.headers.get(ROLE_HEADER) else '',
                        login_url=cfg['LOGIN_URL'], redirect_delay=cfg['AUTH_REDIRECT_DELAY'])


def _load(job_id):
    services = build_services(request_token())
    role = request.headers.get(ROLE_HEADER)
    job = services.jobs.get(job_id) if job_id else None
    engine = make_engine(services, role, job=job)
    return services, engine.mount()


@bp.route('/new', methods=['GET'])
def new_job_card():
    _, engine = _load(None)
    return _respond(True, engine.to_view(), engine.notices)


@bp.route('/<job_id>', methods=['GET'])
def show_job_card(job_id):
    try:
        services, engine = _load(job_id)
    except ApiError as e:
        return _api_failure(e)
    # job updates pushed while the comments load are re-applied to the engine
    feed = _feed(job_id, services, on_job_updated=engine.apply_remote)
    try:
        feed.open()
    finally:
        feed.close()
    return _respond(True, engine.to_view(), engine.notices + feed.notices,
                    comments=[e.to_dict() for e in feed.entries])


@bp.route('/<job_id>/comments', methods=['GET', 'POST'])
def job_comments(job_id):
    services = build_services(request_token())
    feed = _feed(job_id, services)
    try:
        ok = feed.open()
        if ok and request.method == 'POST':
            body = request.get_json(silent=True) or {}
            ok = feed.add_comment(body.get('text'), body.get('attachments'))
    finally:
        feed.close()
    notices = [n.to_dict() for n in feed.notices]
    status = 401 if any(n.get('redirect') for n in notices) else (200 if ok else 400)
    return jsonify(success=ok, comments=[e.to_dict() for e in feed.entries],
                   notices=notices), status


@bp.route('/new/actions/<action>', methods=['POST'])
@bp.route('/<job_id>/actions/<action>', methods=['POST'])
def job_card_action(action, job_id=None):
    handler = ACTIONS.get(action)
    if handler is None:
        return jsonify(success=False, error=f'Unknown action {action}'), 404
    body = request.get_json(silent=True) or {}
    try:
        _, engine = _load(job_id)
    except ApiError as e:
        return _api_failure(e)

    ok = handler(engine, body)
    return _respond(bool(ok), engine.to_view(), engine.notices)
