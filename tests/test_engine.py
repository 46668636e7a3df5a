import os, sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from workshop.api.client import ApiError, AuthError
from workshop.api.workshop import Services
from workshop.drafts import DraftStore
from workshop.engine import JobCardEngine, JobStatus, Role

JOB_ID = 'f' * 24
OIL_ID = '1' * 24
BRAKE_ID = '2' * 24
WASH_ID = '3' * 24

CATALOG = [
    {'_id': OIL_ID, 'name': 'Oil Change', 'basePrice': 45, 'defaultDurationMinutes': 30},
    {'_id': BRAKE_ID, 'name': 'Brake Service', 'cost': 120, 'estimatedTime': '2h',
     'subOptions': [{'key': 'axle', 'label': 'Axle', 'type': 'select', 'options': ['front', 'rear']}]},
    {'_id': WASH_ID, 'name': 'Wash', 'basePrice': 15},
]
VEHICLE = {'_id': 'veh1', 'customer': 'cust1', 'make': 'Toyota', 'model': 'Corolla',
           'plateNo': 'ABC123', 'year': 2015}


class MemoryKV:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def remove(self, key):
        self.data.pop(key, None)


class FakeJobs:
    def __init__(self, fail_update=None, fail_create=None, record=None):
        self.created, self.updates, self.deleted = [], [], []
        self.record = record
        self.fail_update = fail_update
        self.fail_create = fail_create

    def get(self, job_id):
        if self.record is None:
            raise ApiError('Job not found', 404)
        return self.record

    def create(self, job):
        if self.fail_create:
            raise self.fail_create
        self.created.append(job)
        return {'_id': JOB_ID, **job}

    def update(self, job_id, fields):
        if self.fail_update:
            raise self.fail_update
        self.updates.append((job_id, fields))
        return {'_id': job_id, **fields}

    def delete(self, job_id):
        self.deleted.append(job_id)


class FakeInvoices:
    def __init__(self, fail=None):
        self.calls = []
        self.fail = fail

    def create(self, invoice):
        self.calls.append(invoice)
        if self.fail:
            raise self.fail
        return {'_id': 'inv1', 'invoiceNumber': 'INV-0001'}


class FakeDirectory:
    def __init__(self, rows):
        self.rows = list(rows)
        self.created = []

    def list(self, *args, **kwargs):
        return list(self.rows)

    def create(self, fields):
        row = {'_id': f'new{len(self.created) + 1}', **fields}
        self.created.append(row)
        return row

    def delete(self, entry_id):
        self.rows = [r for r in self.rows if r.get('_id') != entry_id]

    def list_by_job(self, job_id):
        return [r for r in self.rows if r.get('job') == job_id]


def make_services(jobs=None, invoices=None):
    return Services(
        jobs=jobs or FakeJobs(),
        invoices=invoices or FakeInvoices(),
        comments=FakeDirectory([]),
        catalog=FakeDirectory(CATALOG),
        inventory=FakeDirectory([{'_id': 'inv-filter', 'name': 'Filter', 'currentStock': 1,
                                  'minStock': 3, 'salePrice': 9}]),
        customers=FakeDirectory([{'_id': 'cust1', 'name': 'Ann'}]),
        vehicles=FakeDirectory([VEHICLE]),
    )


def existing_job(status='PENDING'):
    return {
        '_id': JOB_ID,
        'status': status,
        'customer': {'_id': 'cust1', 'name': 'Ann'},
        'vehicle': {'make': 'Toyota', 'model': 'Corolla', 'plateNo': 'ABC123', 'year': 2015},
        'technician': 'tech1',
        'services': [
            {'id': 'l1', 'name': 'Wash', 'price': 15, 'catalogId': WASH_ID},
            {'id': 'l2', 'name': 'Brake Service', 'price': 120, 'completed': True},
        ],
    }


def new_engine(role='Technician', services=None, kv=None):
    drafts = DraftStore(kv if kv is not None else MemoryKV())
    return JobCardEngine(services or make_services(), role=role, draft_store=drafts).mount()


def test_create_moves_new_job_to_pending_and_clears_draft():
    kv = MemoryKV()
    services = make_services()
    engine = new_engine(services=services, kv=kv)
    assert engine.status is JobStatus.NEW

    assert engine.select_customer('cust1')
    assert engine.select_vehicle('veh1')
    engine.add_service({'_id': WASH_ID, 'name': 'Wash'})
    assert 'jobCardDraft' in kv.data

    assert engine.create()
    assert engine.status is JobStatus.PENDING
    assert engine.job_id == JOB_ID
    assert 'jobCardDraft' not in kv.data
    payload = services.jobs.created[0]
    assert payload['status'] == 'PENDING'
    assert payload['title'] == 'Wash'
    assert payload['vehicle']['plateNo'] == 'ABC123'
    assert payload['amount'] == 15


def test_create_requires_customer_and_keeps_draft_on_failure():
    kv = MemoryKV()
    services = make_services(jobs=FakeJobs(fail_create=ApiError('Job store unavailable', 503)))
    engine = new_engine(services=services, kv=kv)

    assert not engine.create()
    assert engine.notices[-1].message == 'Please select a customer'

    engine.select_customer('cust1')
    engine.select_vehicle('veh1')
    assert not engine.create()
    assert engine.status is JobStatus.NEW
    assert engine.notices[-1].message == 'Job store unavailable'
    assert 'jobCardDraft' in kv.data


def test_draft_is_restored_once_on_mount():
    kv = MemoryKV()
    DraftStore(kv).save({'customerId': 'cust1', 'vehicleId': 'veh1',
                         'lineItems': [{'name': 'Wash', 'price': 15}], 'notes': 'rattle'})
    engine = new_engine(kv=kv)
    engine.mount()

    restored = [n for n in engine.notices if n.message == 'Draft restored from previous session']
    assert len(restored) == 1
    assert engine.customer_id == 'cust1'
    assert engine.vehicle['plateNo'] == 'ABC123'
    assert engine.notes == 'rattle'
    assert engine.total_cost == 15


def test_selecting_customer_clears_vehicle():
    engine = new_engine()
    engine.select_customer('cust1')
    engine.select_vehicle('veh1')
    engine.select_customer('cust1')
    assert engine.vehicle_id == ''


def test_existing_job_resolves_vehicle_by_make_model_plate():
    engine = JobCardEngine(make_services(), role='Admin', job=existing_job()).mount()
    assert engine.vehicle_id == 'veh1'
    assert engine.customer['name'] == 'Ann'
    assert engine.progress == (1, 2)
    assert engine.description == 'Wash, Brake Service'


def test_start_work():
    services = make_services()
    engine = JobCardEngine(services, role='Technician', job=existing_job()).mount()
    assert engine.can_start_work
    assert engine.start_work()
    assert engine.status is JobStatus.IN_PROGRESS
    assert services.jobs.updates[-1][1]['status'] == 'IN_PROGRESS'
    assert not engine.start_work()

    fresh = new_engine()
    assert not fresh.start_work()
    assert fresh.notices[-1].message == 'Cannot start work on a new job. Please save the job first.'


def test_mark_complete_raises_exactly_one_invoice():
    services = make_services()
    engine = JobCardEngine(services, role='Supervisor', job=existing_job('IN_PROGRESS')).mount()
    assert engine.can_complete

    assert engine.mark_complete()
    assert engine.status is JobStatus.COMPLETED
    assert services.jobs.updates[-1][1]['status'] == 'COMPLETED'
    assert len(services.invoices.calls) == 1
    invoice = services.invoices.calls[0]
    assert invoice['amount'] == invoice['subtotal'] == 135
    assert invoice['status'] == 'Paid'
    assert invoice['paymentMethod'] == 'Cash'
    assert invoice['items'][0]['catalogItemId'] == WASH_ID
    assert 'catalogItemId' not in invoice['items'][1]
    assert 'INV-0001' in engine.notices[-1].message

    assert not engine.mark_complete()
    assert len(services.invoices.calls) == 1


def test_invoice_failure_leaves_job_completed():
    services = make_services(invoices=FakeInvoices(fail=ApiError('boom', 500)))
    engine = JobCardEngine(services, role='Admin', job=existing_job()).mount()
    assert engine.mark_complete()
    assert engine.status is JobStatus.COMPLETED
    assert engine.notices[-1].level == 'warning'
    assert engine.notices[-1].message == (
        'Job marked as complete, but invoice creation failed. Please create invoice manually.')


def test_technician_cannot_complete():
    services = make_services()
    engine = JobCardEngine(services, role=Role.TECHNICIAN, job=existing_job()).mount()
    assert not engine.can_complete
    assert not engine.mark_complete()
    assert services.jobs.updates == []
    assert engine.status is JobStatus.PENDING


def test_mark_complete_requires_services():
    job = existing_job()
    job['services'] = []
    engine = JobCardEngine(make_services(), role='Admin', job=job).mount()
    assert not engine.mark_complete()
    assert engine.notices[-1].message == (
        'Please add at least one service before marking the job as complete.')
    assert engine.status is JobStatus.PENDING


def test_completed_job_ignores_mutations():
    services = make_services()
    engine = JobCardEngine(services, role='Admin', job=existing_job('COMPLETED')).mount()
    before = engine.snapshot()

    assert not engine.toggle_completed('l1')
    assert not engine.set_price('l1', 99)
    assert not engine.set_duration('l1', '3h')
    assert not engine.remove_service('l1')
    assert engine.add_service({'_id': OIL_ID, 'name': 'Oil Change'}) is None
    assert not engine.set_notes('late')
    assert not engine.start_work()

    assert engine.snapshot() == before
    assert services.jobs.updates == []
    assert engine.is_read_only and not engine.can_edit


def test_failed_update_rolls_back():
    services = make_services(jobs=FakeJobs(fail_update=ApiError('Job store unavailable', 503)))
    engine = JobCardEngine(services, role='Admin', job=existing_job()).mount()
    before = engine.snapshot()

    assert not engine.toggle_completed('l1')
    assert not engine.remove_service('l2')
    assert not engine.set_overall_comment('all good')
    assert engine.snapshot() == before
    assert engine.notices[-1].message == 'Job store unavailable'


def test_line_item_change_is_persisted_for_existing_job():
    services = make_services()
    engine = JobCardEngine(services, role='Technician', job=existing_job()).mount()
    assert engine.toggle_completed('l1')
    job_id, fields = services.jobs.updates[-1]
    assert job_id == JOB_ID
    assert [s['completed'] for s in fields['services']] == [True, True]


def test_auth_failure_redirects_to_login():
    services = make_services(jobs=FakeJobs(fail_update=AuthError()))
    engine = JobCardEngine(services, role='Admin', job=existing_job()).mount()
    assert not engine.toggle_completed('l1')
    notice = engine.notices[-1]
    assert notice.redirect == '/login'
    assert notice.delay == 2.0
    assert notice.message == 'Session expired, please log in again'


def test_oil_change_needs_details_before_it_is_added():
    engine = new_engine(role='Supervisor')
    decision = engine.add_service({'_id': OIL_ID, 'name': 'Oil Change'})
    assert decision.via == 'oilLegacy'
    assert engine.line_items == []

    assert engine.confirm_oil_details({'oilFilter': 'F-1', 'oilGrade': ' ', 'bogus': 'x'})
    line = engine.line_items[0]
    assert line.details == {'oilFilter': 'F-1'}
    assert line.price == 45
    assert line.catalog_id == OIL_ID
    assert engine.pending_capture is None


def test_technician_cannot_configure_details():
    engine = new_engine(role='Technician')
    assert engine.add_service({'_id': OIL_ID, 'name': 'Oil Change'}) is None
    assert engine.line_items == []


def test_generic_details_keep_only_declared_values():
    engine = new_engine(role='Admin')
    engine.add_service({'_id': BRAKE_ID, 'name': 'Brake Service'})
    assert engine.confirm_service_details({'axle': 'front', 'bogus': 'x'}, comments='squeal',
                                          parts_used=['pads'])
    line = engine.line_items[0]
    assert line.sub_option_values == {'axle': 'front'}
    assert line.comments is None
    assert line.parts_used is None
    assert line.duration_minutes == 120


def test_same_service_is_not_added_twice():
    engine = new_engine()
    engine.add_service({'_id': WASH_ID, 'name': 'Wash'})
    assert engine.add_service({'_id': WASH_ID, 'name': 'Wash'}) is None
    assert len(engine.line_items) == 1


def test_price_and_duration_edits():
    engine = new_engine(role='Admin')
    engine.add_service({'_id': WASH_ID, 'name': 'Wash'})
    line_id = engine.line_items[0].id

    assert not engine.set_price(line_id, 'abc')
    assert engine.notices[-1].message == 'Enter a valid price.'
    assert not engine.set_duration(line_id, '  ')
    assert engine.notices[-1].message == 'Enter a valid time.'

    assert engine.set_price(line_id, '20')
    assert engine.set_duration(line_id, '1h 30m')
    assert engine.line_items[0].price == 20
    assert engine.line_items[0].duration_minutes == 90
    assert engine.estimated_hours == 1.5


def test_technician_cannot_remove_or_reprice():
    engine = new_engine(role='Technician')
    engine.add_service({'_id': WASH_ID, 'name': 'Wash'})
    line_id = engine.line_items[0].id
    assert not engine.remove_service(line_id)
    assert not engine.set_price(line_id, 1)
    assert engine.toggle_completed(line_id)
    assert engine.line_items[0].completed


def test_custom_service_is_created_and_attached():
    services = make_services()
    engine = new_engine(role='Admin', services=services)
    assert not engine.add_custom_service('', 10)
    assert engine.notices[-1].message == 'Service name and cost are required'

    assert engine.add_custom_service('Headlight polish', '25', '45 mins')
    assert services.catalog.created[0]['visibility'] == 'local'
    line = engine.line_items[0]
    assert line.name == 'Headlight polish'
    assert line.price == 25
    assert line.duration_minutes == 45


def test_inventory_item_warns_on_low_stock():
    engine = new_engine()
    item = engine.catalog.stock_for('inv-filter')
    assert engine.add_inventory_item(item)
    line = engine.line_items[0]
    assert line.is_inventory_item and line.inventory_item_id == 'inv-filter'
    assert any(n.level == 'warning' for n in engine.notices)


def test_apply_remote_reconciles_state():
    engine = JobCardEngine(make_services(), role='Admin', job=existing_job()).mount()
    assert engine.apply_remote({'_id': JOB_ID, 'status': 'IN_PROGRESS',
                                'services': [{'id': 'l9', 'name': 'Tyres', 'price': 300}]})
    assert engine.status is JobStatus.IN_PROGRESS
    assert [i.name for i in engine.line_items] == ['Tyres']
    assert not engine.apply_remote({'_id': 'other', 'status': 'COMPLETED'})
    assert engine.status is JobStatus.IN_PROGRESS


def test_catalog_failure_is_reported():
    services = make_services()

    def broken():
        raise ApiError('Catalog offline', 503)

    services.catalog.list = broken
    engine = new_engine(services=services)
    assert engine.catalog.entries == []
    assert any(n.message == 'Catalog offline' for n in engine.notices)


@pytest.mark.parametrize('role, manager', [('Technician', False), ('supervisor', True), ('ADMIN', True)])
def test_role_parsing(role, manager):
    engine = JobCardEngine(make_services(), role=role, job=existing_job())
    assert engine.is_manager is manager
    assert engine.can_delete is manager


@pytest.mark.parametrize('value', ['inf', '-inf', 'nan', 10**400])
def test_non_finite_price_is_rejected(value):
    services = make_services()
    engine = JobCardEngine(services, role='Admin', job=existing_job()).mount()
    before = engine.snapshot()
    assert not engine.set_price('l1', value)
    assert engine.notices[-1].message == 'Enter a valid price.'
    assert engine.snapshot() == before
    assert services.jobs.updates == []


@pytest.mark.parametrize('cost', ['nan', 'inf', 10**400])
def test_custom_service_needs_a_finite_cost(cost):
    services = make_services()
    engine = new_engine(role='Admin', services=services)
    assert not engine.add_custom_service('Polish', cost)
    assert engine.notices[-1].message == 'Service name and cost are required'
    assert services.catalog.created == []
    assert engine.line_items == []


def test_legacy_lines_with_same_name_are_removed_one_at_a_time():
    job = existing_job()
    job['services'] = [{'name': 'Wheel alignment', 'price': 50},
                       {'name': 'Wheel alignment', 'price': 50}]
    services = make_services()
    engine = JobCardEngine(services, role='Admin', job=job).mount()
    ids = [item.id for item in engine.line_items]
    assert len(set(ids)) == 2

    assert engine.remove_service(ids[0])
    assert [item.id for item in engine.line_items] == [ids[1]]
    assert len(services.jobs.updates[-1][1]['services']) == 1


@pytest.mark.parametrize('method, message', [
    ('select_technician', 'Only supervisors and admins can change the technician.'),
    ('select_supervisor', 'Only supervisors and admins can change the supervisor.'),
])
def test_technician_cannot_reassign_staff(method, message):
    engine = JobCardEngine(make_services(), role='Technician', job=existing_job()).mount()
    assert not getattr(engine, method)('someone-else')
    assert engine.notices[-1].message == message
    assert engine.technician_id == 'tech1'


def test_remote_update_cannot_reopen_completed_job():
    engine = JobCardEngine(make_services(), role='Admin', job=existing_job('COMPLETED')).mount()
    assert engine.apply_remote({'_id': JOB_ID, 'status': 'IN_PROGRESS', 'notes': 'late note'})
    assert engine.status is JobStatus.COMPLETED
    assert engine.is_read_only


def test_service_details_follow_the_catalog_entry():
    job = existing_job()
    job['services'] = [
        {'id': 'b1', 'name': 'Brake Service', 'price': 120, 'catalogId': BRAKE_ID},
        {'id': 'x1', 'name': 'Hand-entered', 'price': 10},
    ]
    services = make_services()
    engine = JobCardEngine(services, role='Admin', job=job).mount()

    assert engine.edit_service_details('b1', {'axle': 'rear'}, comments='noisy', parts_used=['pads'])
    line = engine.line_items[0]
    assert line.sub_option_values == {'axle': 'rear'}
    assert line.comments is None and line.parts_used is None

    assert not engine.edit_service_details('x1', {'any': 'thing'}, comments='free text')
    assert engine.notices[-1].message == 'Hand-entered has no configurable details.'
    assert engine.line_items[1].comments is None
