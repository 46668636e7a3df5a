# workshop/engine.py
"""Job card lifecycle: selection, service lines, transitions and their side effects.

A job card moves NEW -> PENDING -> IN_PROGRESS -> COMPLETED.  ``status`` is
only ever changed by the transition methods (``create``, ``start_work``,
``mark_complete``) or when the remote record is re-applied.  Every UI gating
flag is derived from the status and the acting role.

Mutations on a job that already exists remotely are optimistic: the change
is applied locally, the job store is called, and the previous state is put
back if the call fails.  A job that has not been created yet is mirrored to
the draft store after every change instead.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from workshop.api.client import SESSION_EXPIRED, ApiError, AuthError
from workshop.catalog import (
    AcquisitionDecision,
    CatalogEntry,
    CatalogSnapshot,
    InventoryItem,
    resolve,
)
from workshop.drafts import has_content
from workshop.line_items import (
    OIL_DETAIL_KEYS,
    ServiceLineItem,
    effective_price,
    normalize_all,
    parse_duration,
)
from workshop.optimistic import run_optimistic

DEFAULT_TITLE = "Service Job"


class JobStatus(str, Enum):
    NEW = "NEW"
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"

    @classmethod
    def from_remote(cls, value: Any) -> "JobStatus":
        try:
            status = cls(str(value or "").upper())
        except ValueError:
            return cls.PENDING
        return cls.PENDING if status is cls.NEW else status


class Role(str, Enum):
    TECHNICIAN = "Technician"
    SUPERVISOR = "Supervisor"
    ADMIN = "Admin"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for role in cls:
            if role.value.lower() == text:
                return role
        return cls.TECHNICIAN


MANAGERS = (Role.SUPERVISOR, Role.ADMIN)


@dataclass
class Notice:
    level: str
    message: str
    redirect: Optional[str] = None
    delay: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"level": self.level, "message": self.message}
        if self.redirect:
            data["redirect"] = self.redirect
            data["delay"] = self.delay
        return data


def ref_id(value: Any) -> str:
    """Id of a reference that may be a bare id or an embedded record."""
    if isinstance(value, Mapping):
        value = value.get("_id") or value.get("id")
    return str(value) if value else ""


def _vehicle_matches(candidate: Mapping, embedded: Mapping) -> bool:
    return all(
        str(candidate.get(k) or "") == str(embedded.get(k) or "")
        for k in ("make", "model", "plateNo")
    )


class JobCardEngine:
    def __init__(
        self,
        services,
        role=Role.TECHNICIAN,
        draft_store=None,
        job: Optional[Mapping] = None,
        login_url: str = "/login",
        redirect_delay: float = 2.0,
        on_notice: Optional[Callable[[Notice], None]] = None,
        id_factory: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.services = services
        self.role = Role.parse(role)
        self.draft_store = draft_store
        self.login_url = login_url
        self.redirect_delay = redirect_delay
        self.on_notice = on_notice
        self._id_factory = id_factory or (lambda prefix: f"{prefix}-{uuid.uuid4().hex[:12]}")

        self.notices: List[Notice] = []
        self.catalog = CatalogSnapshot()
        self.customers: List[Dict] = []
        self.vehicles: List[Dict] = []
        self.pending_capture: Optional[Dict[str, Any]] = None
        self.mounted = False
        self.deleted = False

        job = dict(job or {})
        self.job = job
        self.job_id = ref_id(job)
        self.status = JobStatus.from_remote(job.get("status")) if self.job_id else JobStatus.NEW
        self.customer_id = ref_id(job.get("customer"))
        self.vehicle_id = ref_id(job.get("vehicle")) if not isinstance(job.get("vehicle"), Mapping) else ""
        self.technician_id = ref_id(job.get("technician"))
        self.supervisor_id = ref_id(job.get("supervisor"))
        self.line_items: List[ServiceLineItem] = normalize_all(job.get("services"))
        self.notes = job.get("notes") or ""
        self.overall_comment = job.get("overallServiceComment") or ""
        self._title = job.get("title") or ""
        self._description = job.get("description") or ""
        self._embedded_customer = job.get("customer") if isinstance(job.get("customer"), Mapping) else None
        self._embedded_vehicle = job.get("vehicle") if isinstance(job.get("vehicle"), Mapping) else None

    # ------------------------------------------------------------------
    # mount

    def mount(self) -> "JobCardEngine":
        """Load the draft (new jobs only) and the per-session reference data."""
        if self.mounted:
            return self
        self.mounted = True

        if self.is_new and self.draft_store is not None:
            draft = self.draft_store.load()
            if draft:
                self._apply_draft(draft)
                if has_content(draft):
                    self._notify("info", "Draft restored from previous session")

        self._refresh_catalog()

        try:
            self.customers = list(self.services.customers.list())
        except ApiError as e:
            self._report(e, "Failed to load customers")

        if self.customer_id:
            self._load_vehicles()
            self._resolve_vehicle()
        return self

    def _apply_draft(self, draft: Mapping) -> None:
        self.customer_id = draft.get("customerId") or ""
        self.vehicle_id = draft.get("vehicleId") or ""
        self.technician_id = draft.get("technicianId") or ""
        self.supervisor_id = draft.get("supervisorId") or ""
        self.line_items = normalize_all(draft.get("lineItems"))
        self.notes = draft.get("notes") or ""
        self.overall_comment = draft.get("overallComment") or ""

    def _refresh_catalog(self) -> None:
        try:
            self.catalog = CatalogSnapshot.load(self.services.catalog, self.services.inventory)
        except ApiError as e:
            self._report(e, "Failed to load service catalog")

    def _load_vehicles(self) -> None:
        try:
            self.vehicles = list(self.services.vehicles.list(customer=self.customer_id))
        except ApiError as e:
            self.vehicles = []
            self._report(e, "Failed to load vehicles")

    def _resolve_vehicle(self) -> None:
        if self._embedded_vehicle and not self.vehicle_id:
            found = next((v for v in self.vehicles if _vehicle_matches(v, self._embedded_vehicle)), None)
            if found:
                self.vehicle_id = ref_id(found)
        elif self.vehicle_id and self.vehicles and self.vehicle is None:
            logging.info("vehicle %s no longer belongs to customer %s", self.vehicle_id, self.customer_id)
            self.vehicle_id = ""

    # ------------------------------------------------------------------
    # derived state

    @property
    def is_new(self) -> bool:
        return self.status is JobStatus.NEW

    @property
    def is_read_only(self) -> bool:
        return self.status is JobStatus.COMPLETED

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGERS

    @property
    def can_edit(self) -> bool:
        return self.is_new or (self.is_manager and not self.is_read_only)

    @property
    def can_start_work(self) -> bool:
        return not self.is_new and self.status is JobStatus.PENDING

    @property
    def can_complete(self) -> bool:
        return self.is_manager and not self.is_new and not self.is_read_only

    @property
    def can_mark_line_items(self) -> bool:
        return not self.is_read_only

    @property
    def can_add_comments(self) -> bool:
        return not self.is_new

    @property
    def can_delete(self) -> bool:
        return self.is_manager and not self.is_new

    @property
    def customer(self) -> Optional[Dict]:
        if not self.customer_id:
            return None
        found = next((c for c in self.customers if ref_id(c) == self.customer_id), None)
        if found is None and self._embedded_customer and ref_id(self._embedded_customer) == self.customer_id:
            return dict(self._embedded_customer)
        return found

    @property
    def vehicle(self) -> Optional[Dict]:
        if not self.vehicle_id:
            return None
        return next((v for v in self.vehicles if ref_id(v) == self.vehicle_id), None)

    @property
    def total_cost(self) -> float:
        return sum(effective_price(item) for item in self.line_items)

    @property
    def progress(self) -> tuple:
        return sum(1 for item in self.line_items if item.completed), len(self.line_items)

    @property
    def progress_percent(self) -> float:
        done, total = self.progress
        return (done / total) * 100 if total else 0.0

    @property
    def estimated_hours(self) -> float:
        return sum(item.duration_minutes for item in self.line_items) / 60

    @property
    def title(self) -> str:
        if self._title:
            return self._title
        return self.line_items[0].name if self.line_items else DEFAULT_TITLE

    @property
    def description(self) -> str:
        return ", ".join(item.name for item in self.line_items) or self._description

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "status": self.status.value,
            "customerId": self.customer_id,
            "vehicleId": self.vehicle_id,
            "technicianId": self.technician_id,
            "supervisorId": self.supervisor_id,
            "lineItems": [item.to_dict() for item in self.line_items],
            "notes": self.notes,
            "overallComment": self.overall_comment,
        }

    def _restore(self, snap: Mapping[str, Any]) -> None:
        self.job_id = snap["id"]
        self.status = JobStatus(snap["status"])
        self.customer_id = snap["customerId"]
        self.vehicle_id = snap["vehicleId"]
        self.technician_id = snap["technicianId"]
        self.supervisor_id = snap["supervisorId"]
        self.line_items = normalize_all(snap["lineItems"])
        self.notes = snap["notes"]
        self.overall_comment = snap["overallComment"]

    def to_view(self) -> Dict[str, Any]:
        done, total = self.progress
        view = self.snapshot()
        view.update({
            "title": self.title,
            "description": self.description,
            "customer": self.customer,
            "vehicle": self.vehicle,
            "totalCost": self.total_cost,
            "progress": {"completed": done, "total": total, "percent": self.progress_percent},
            "estimatedHours": self.estimated_hours,
            "pendingCapture": self._pending_view(),
            "permissions": {
                "readOnly": self.is_read_only,
                "canEdit": self.can_edit,
                "canStartWork": self.can_start_work,
                "canComplete": self.can_complete,
                "canMarkLineItems": self.can_mark_line_items,
                "canAddComments": self.can_add_comments,
                "canDelete": self.can_delete,
            },
            "notices": [n.to_dict() for n in self.notices],
        })
        return view

    def _pending_view(self) -> Optional[Dict[str, Any]]:
        if not self.pending_capture:
            return None
        decision = self.pending_capture["decision"]
        entry = decision.entry
        return {
            "via": decision.via,
            "name": self.pending_capture["candidate"].get("name") or entry.name,
            "subOptions": [o.to_dict() for o in entry.sub_options],
            "allowComments": entry.allow_comments,
            "allowedParts": list(entry.allowed_parts),
        }

    # ------------------------------------------------------------------
    # notices

    def _notify(self, level: str, message: str, **extra) -> None:
        notice = Notice(level, message, **extra)
        self.notices.append(notice)
        logging.log(logging.WARNING if level in ("error", "warning") else logging.INFO,
                    "job %s: %s", self.job_id or "new", message)
        if self.on_notice:
            self.on_notice(notice)

    def _report(self, error: ApiError, fallback: str, level: str = "error") -> None:
        logging.error("%s: %s", fallback, error)
        if isinstance(error, AuthError):
            self._notify("error", str(error) or SESSION_EXPIRED,
                         redirect=self.login_url, delay=self.redirect_delay)
        else:
            self._notify(level, str(error) or fallback)

    def _reject(self, message: str) -> bool:
        self._notify("error", message)
        return False

    # ------------------------------------------------------------------
    # guards and commit

    def _guard_mutable(self) -> bool:
        if self.is_read_only:
            self._notify("error", "Completed jobs are read-only.")
            return False
        return True

    def _guard_manager(self, action: str) -> bool:
        if not self.is_manager:
            self._notify("error", f"Only supervisors and admins can {action}.")
            return False
        return True

    def _save_draft(self) -> None:
        if self.is_new and self.draft_store is not None:
            self.draft_store.save(self.snapshot())

    def _find_line(self, line_id: str) -> Optional[ServiceLineItem]:
        return next((item for item in self.line_items if item.id == line_id), None)

    def _commit_lines(self, items: Iterable[Any], success: str, failure: str) -> bool:
        new_items = normalize_all(list(items))
        if self.is_new:
            self.line_items = new_items
            self._save_draft()
            return True

        def apply():
            self.line_items = new_items

        def remote():
            return self.services.jobs.update(
                self.job_id, {"services": [item.to_dict() for item in new_items]}
            )

        ok, result = run_optimistic(self.snapshot, self._restore, apply, remote)
        if ok:
            self._notify("success", success)
        else:
            self._report(result, failure)
        return ok

    def _replace_line(self, line_id: str, **changes) -> List[Dict[str, Any]]:
        updated = []
        for item in self.line_items:
            raw = item.to_dict()
            if item.id == line_id:
                raw.update(changes)
            updated.append(raw)
        return updated

    # ------------------------------------------------------------------
    # customer, vehicle and staff

    def select_customer(self, customer_id: str) -> bool:
        if not self._guard_mutable():
            return False
        if not self.can_edit:
            return self._reject("Only supervisors and admins can change the customer.")
        self.customer_id = customer_id or ""
        self.vehicle_id = ""
        self._embedded_vehicle = None
        if self.customer_id:
            self._load_vehicles()
        else:
            self.vehicles = []
        self._save_draft()
        return True

    def select_vehicle(self, vehicle_id: str) -> bool:
        if not self._guard_mutable():
            return False
        if not self.can_edit:
            return self._reject("Only supervisors and admins can change the vehicle.")
        if not self.customer_id:
            return self._reject("Please select a customer first.")
        self.vehicle_id = vehicle_id or ""
        self._save_draft()
        return True

    def select_technician(self, technician_id: str) -> bool:
        if not self._guard_mutable():
            return False
        if not self.can_edit:
            return self._reject("Only supervisors and admins can change the technician.")
        self.technician_id = technician_id or ""
        self._save_draft()
        return True

    def select_supervisor(self, supervisor_id: str) -> bool:
        if not self._guard_mutable():
            return False
        if not self.can_edit:
            return self._reject("Only supervisors and admins can change the supervisor.")
        self.supervisor_id = supervisor_id or ""
        self._save_draft()
        return True

    def create_customer(self, fields: Mapping[str, Any]) -> bool:
        if not self._guard_mutable():
            return False
        name = str(fields.get("name") or "").strip()
        if not name:
            return self._reject("Customer name is required")
        payload = {k: str(v).strip() for k, v in fields.items() if v is not None and str(v).strip()}
        payload["name"] = name
        try:
            created = self.services.customers.create(payload)
        except ApiError as e:
            self._report(e, "Failed to create customer. Please try again.")
            return False
        self.customers.append(created)
        self._notify("success", "Customer created successfully")
        return self.select_customer(ref_id(created))

    def create_vehicle(self, fields: Mapping[str, Any]) -> bool:
        if not self._guard_mutable():
            return False
        if not self.customer_id:
            return self._reject("Please select a customer first.")
        for key, label in (("make", "Make"), ("model", "Model"), ("plateNo", "Plate number")):
            if not str(fields.get(key) or "").strip():
                return self._reject(f"{label} is required")
        payload = {
            "customer": self.customer_id,
            "make": str(fields["make"]).strip(),
            "model": str(fields["model"]).strip(),
            "plateNo": str(fields["plateNo"]).strip(),
        }
        if fields.get("year"):
            try:
                payload["year"] = int(fields["year"])
            except (TypeError, ValueError):
                return self._reject("Year must be a number")
        try:
            created = self.services.vehicles.create(payload)
        except ApiError as e:
            self._report(e, "Failed to create vehicle. Please try again.")
            return False
        self.vehicles.append(created)
        self._notify("success", "Vehicle created successfully")
        return self.select_vehicle(ref_id(created))

    # ------------------------------------------------------------------
    # free text

    def set_notes(self, text: str) -> bool:
        if not self._guard_mutable():
            return False
        self.notes = text or ""
        self._save_draft()
        return True

    def set_overall_comment(self, text: str) -> bool:
        if not self._guard_mutable():
            return False
        text = text or ""
        if self.is_new:
            self.overall_comment = text
            self._save_draft()
            return True

        def apply():
            self.overall_comment = text

        def remote():
            return self.services.jobs.update(self.job_id, {"overallServiceComment": text})

        ok, result = run_optimistic(self.snapshot, self._restore, apply, remote)
        if ok:
            self._notify("success", "Service comment saved")
        else:
            self._report(result, "Failed to save service comment")
        return ok

    # ------------------------------------------------------------------
    # adding service lines

    def _already_selected(self, candidate: Mapping[str, Any]) -> bool:
        cid = ref_id(candidate)
        name = candidate.get("name")
        return any(
            (cid and (item.catalog_id == cid or item.id == cid)) or item.name == name
            for item in self.line_items
        )

    def _line_from(self, candidate: Mapping[str, Any], decision: AcquisitionDecision,
                   **extra) -> Dict[str, Any]:
        cid = ref_id(candidate) or decision.entry.id
        raw = {
            "id": self._id_factory("service"),
            "name": candidate.get("name") or decision.entry.name,
            "serviceId": cid,
            "catalogId": cid,
            "price": decision.effective_price,
            "durationMinutes": decision.effective_duration,
            "estimatedTime": decision.estimated_time,
            "completed": False,
            "details": {},
        }
        raw.update(extra)
        return raw

    def add_service(self, candidate: Mapping[str, Any]) -> Optional[AcquisitionDecision]:
        """Attach a catalog (or hand-entered) service.

        Returns the acquisition decision.  When it requires detail capture
        the service is parked in ``pending_capture`` until
        :meth:`confirm_service_details` or :meth:`confirm_oil_details`.
        """
        if not self._guard_mutable():
            return None
        if self._already_selected(candidate):
            self._notify("info", f"{candidate.get('name') or 'Service'} is already on this job card")
            return None

        decision = resolve(candidate, self.catalog)
        if decision.requires_detail_capture:
            if not self._guard_manager("configure service details"):
                return None
            self.pending_capture = {"candidate": dict(candidate), "decision": decision}
            return decision

        items = [item.to_dict() for item in self.line_items]
        items.append(self._line_from(candidate, decision))
        self._commit_lines(items, "Service added", "Failed to add service")
        return decision

    def cancel_capture(self) -> None:
        self.pending_capture = None

    def confirm_oil_details(self, details: Mapping[str, Any]) -> bool:
        pending = self.pending_capture
        if not pending or pending["decision"].via != "oilLegacy":
            return self._reject("No oil change is waiting for details.")
        if not self._guard_mutable():
            return False
        items = [item.to_dict() for item in self.line_items]
        items.append(self._line_from(pending["candidate"], pending["decision"],
                                     details=_oil_payload(details)))
        self.pending_capture = None
        return self._commit_lines(items, "Service added", "Failed to add service")

    def confirm_service_details(self, sub_option_values=None, comments=None, parts_used=None) -> bool:
        pending = self.pending_capture
        if not pending or pending["decision"].via != "generic":
            return self._reject("No service is waiting for details.")
        if not self._guard_mutable():
            return False
        captured = _capture_payload(pending["decision"].entry, sub_option_values, comments, parts_used)
        items = [item.to_dict() for item in self.line_items]
        items.append(self._line_from(pending["candidate"], pending["decision"], **captured))
        self.pending_capture = None
        return self._commit_lines(items, "Service added", "Failed to add service")

    def add_inventory_item(self, item) -> bool:
        if not self._guard_mutable():
            return False
        if isinstance(item, Mapping):
            item = InventoryItem.from_dict(item)
        if any(
            line.inventory_item_id == item.id or (line.is_inventory_item and line.name == item.name)
            for line in self.line_items
        ):
            self._notify("info", f"{item.name} is already on this job card")
            return False
        if item.is_out_of_stock:
            self._notify("warning", f"{item.name} is out of stock")
        elif item.is_low_stock:
            self._notify("warning", f"{item.name} is low on stock")
        items = [line.to_dict() for line in self.line_items]
        items.append({
            "id": self._id_factory("inventory"),
            "name": item.name,
            "price": item.sale_price,
            "durationMinutes": 0,
            "estimatedTime": "",
            "completed": False,
            "isInventoryItem": True,
            "inventoryItemId": item.id,
            "sku": item.sku,
            "category": item.category,
            "unit": item.unit,
        })
        return self._commit_lines(items, "Item added", "Failed to add item")

    def add_custom_service(self, name: str, cost: Any, time: str = "", sub_options=()) -> bool:
        """Create a local catalog entry and put it straight on the job card."""
        if not self._guard_mutable() or not self._guard_manager("add custom services"):
            return False
        name = (name or "").strip()
        try:
            price = float(cost)
        except (TypeError, ValueError, OverflowError):
            price = None
        if not name or price is None or not math.isfinite(price) or price < 0:
            return self._reject("Service name and cost are required")

        duration = parse_duration(time)
        entry = {
            "name": name,
            "type": "service",
            "cost": price,
            "basePrice": price,
            "defaultDurationMinutes": duration,
            "estimatedTime": time or "",
            "visibility": "local",
            "subOptions": [o for o in (sub_options or []) if str(o.get("label") or "").strip()],
            "allowComments": False,
            "allowedParts": [],
        }
        try:
            created = self.services.catalog.create(entry)
        except ApiError as e:
            self._report(e, "Failed to save custom service. Please try again.")
            return False

        cid = ref_id(created)
        items = [item.to_dict() for item in self.line_items]
        items.append({
            "id": self._id_factory("service"),
            "name": name,
            "price": price,
            "estimatedTime": time or "N/A",
            "durationMinutes": duration,
            "serviceId": cid,
            "catalogId": cid,
            "completed": False,
            "details": {},
        })
        ok = self._commit_lines(items, "Custom service added to catalog", "Failed to add service")
        self._refresh_catalog()
        return ok

    def delete_custom_service(self, entry_id: str) -> bool:
        if not self._guard_manager("delete custom services"):
            return False
        entry = self.catalog.find(entry_id)
        try:
            self.services.catalog.delete(entry_id)
        except ApiError as e:
            self._report(e, "Failed to delete custom service. Please try again.")
            return False
        self._notify("success", f"Custom service \"{entry.name if entry else entry_id}\" deleted successfully")
        self._refresh_catalog()
        return True

    # ------------------------------------------------------------------
    # editing service lines

    def edit_oil_details(self, line_id: str, details: Mapping[str, Any]) -> bool:
        if not self._guard_mutable() or not self._guard_manager("edit service details"):
            return False
        if self._find_line(line_id) is None:
            return self._reject("Service not found on this job card.")
        return self._commit_lines(
            self._replace_line(line_id, details=_oil_payload(details)),
            "Oil change details updated",
            "Failed to update oil change details",
        )

    def edit_service_details(self, line_id: str, sub_option_values=None, comments=None,
                             parts_used=None) -> bool:
        if not self._guard_mutable() or not self._guard_manager("edit service details"):
            return False
        line = self._find_line(line_id)
        if line is None:
            return self._reject("Service not found on this job card.")
        entry = self.catalog.find(line.catalog_id)
        if entry is None:
            return self._reject(f"{line.name or 'This service'} has no configurable details.")
        captured = _capture_payload(entry, sub_option_values, comments, parts_used)
        return self._commit_lines(
            self._replace_line(line_id, **captured),
            "Service details updated",
            "Failed to update service details",
        )

    def set_price(self, line_id: str, value: Any) -> bool:
        if not self._guard_mutable() or not self._guard_manager("change prices"):
            return False
        if self._find_line(line_id) is None:
            return self._reject("Service not found on this job card.")
        try:
            price = float(value)
        except (TypeError, ValueError, OverflowError):
            price = -1.0
        if not math.isfinite(price) or price < 0:
            return self._reject("Enter a valid price.")
        return self._commit_lines(
            self._replace_line(line_id, price=price, estimatedCost=price),
            "Price updated",
            "Failed to update price",
        )

    def set_duration(self, line_id: str, text: str) -> bool:
        if not self._guard_mutable() or not self._guard_manager("change durations"):
            return False
        if self._find_line(line_id) is None:
            return self._reject("Service not found on this job card.")
        if not (text or "").strip():
            return self._reject("Enter a valid time.")
        return self._commit_lines(
            self._replace_line(line_id, estimatedTime=text.strip(),
                               durationMinutes=parse_duration(text)),
            "Time updated",
            "Failed to update time",
        )

    def remove_service(self, line_id: str) -> bool:
        if not self._guard_mutable() or not self._guard_manager("remove services"):
            return False
        if self._find_line(line_id) is None:
            return self._reject("Service not found on this job card.")
        return self._commit_lines(
            [item.to_dict() for item in self.line_items if item.id != line_id],
            "Service removed",
            "Failed to remove service",
        )

    def toggle_completed(self, line_id: str) -> bool:
        if not self._guard_mutable():
            return False
        line = self._find_line(line_id)
        if line is None:
            return self._reject("Service not found on this job card.")
        return self._commit_lines(
            self._replace_line(line_id, completed=not line.completed),
            "Service status updated",
            "Failed to update service status",
        )

    def replace_line_items(self, items: Iterable[Any]) -> bool:
        if not self._guard_mutable() or not self._guard_manager("replace services"):
            return False
        return self._commit_lines(items, "Services updated", "Failed to update services")

    # ------------------------------------------------------------------
    # transitions

    def _vehicle_payload(self) -> Dict[str, Any]:
        vehicle = self.vehicle or {}
        return {
            "make": vehicle.get("make") or "",
            "model": vehicle.get("model") or "",
            "year": vehicle.get("year"),
            "plateNo": vehicle.get("plateNo") or "",
        }

    def job_payload(self, status: JobStatus) -> Dict[str, Any]:
        hours = self.estimated_hours
        return {
            "customer": self.customer_id,
            "vehicle": self._vehicle_payload(),
            "title": self.title,
            "description": self.description,
            "status": status.value,
            "technician": self.technician_id or None,
            "supervisor": self.supervisor_id or None,
            "estimatedTimeHours": hours if hours > 0 else None,
            "amount": self.total_cost,
            "services": [item.to_dict() for item in self.line_items],
            "notes": self.notes or None,
            "overallServiceComment": self.overall_comment or None,
        }

    def invoice_payload(self) -> Dict[str, Any]:
        items = []
        for line in self.line_items:
            item = {"description": line.name or "Service", "quantity": 1,
                    "price": effective_price(line)}
            if line.is_inventory_item and line.inventory_item_id:
                item["inventoryItemId"] = line.inventory_item_id
            elif line.service_id or line.catalog_id:
                item["catalogItemId"] = line.service_id or line.catalog_id
            items.append(item)
        total = self.total_cost
        return {
            "customer": self.customer_id,
            "job": self.job_id,
            "vehicle": self._vehicle_payload(),
            "items": items,
            "subtotal": total,
            "discount": 0,
            "tax": 0,
            "amount": total,
            "status": "Paid",
            "paymentMethod": "Cash",
            "technician": self.technician_id or None,
            "supervisor": self.supervisor_id or None,
            "date": datetime.now(timezone.utc).isoformat(),
        }

    def _check_selection(self) -> bool:
        if not self.customer_id:
            return self._reject("Please select a customer")
        if not self.vehicle_id:
            return self._reject("Please select a vehicle")
        if self.vehicle is None:
            return self._reject("Please select a valid vehicle")
        return True

    def create(self) -> bool:
        """NEW -> PENDING.  The draft survives anything short of success."""
        if not self.is_new:
            return self._reject("This job card has already been created.")
        if not self._check_selection():
            return False
        try:
            created = self.services.jobs.create(self.job_payload(JobStatus.PENDING))
        except ApiError as e:
            self._report(e, "Failed to create job card")
            return False
        job_id = ref_id(created)
        if not job_id:
            return self._reject("The job store did not return an id for the new job card.")

        if self.draft_store is not None:
            self.draft_store.clear()
        self.job = dict(created)
        self.job_id = job_id
        self.status = JobStatus.PENDING
        self._notify("success", "Job card created")
        return True

    def save(self) -> bool:
        if self.is_new:
            return self.create()
        if not self._guard_mutable():
            return False
        if not self._check_selection():
            return False
        try:
            self.services.jobs.update(self.job_id, self.job_payload(self.status))
        except ApiError as e:
            self._report(e, "Failed to save job card")
            return False
        self._notify("success", "Job card saved")
        return True

    def start_work(self) -> bool:
        """PENDING -> IN_PROGRESS, sending the service lines as they are now."""
        if not self.job_id:
            return self._reject("Cannot start work on a new job. Please save the job first.")
        if self.status is not JobStatus.PENDING:
            return self._reject("Work can only be started on a pending job.")
        try:
            self.services.jobs.update(self.job_id, {
                "status": JobStatus.IN_PROGRESS.value,
                "services": [item.to_dict() for item in self.line_items],
            })
        except ApiError as e:
            self._report(e, "Failed to start work. Please try again.")
            return False
        self.status = JobStatus.IN_PROGRESS
        self._notify("success", "Work started")
        return True

    def mark_complete(self) -> bool:
        """Complete the job, then raise a paid invoice for it.

        The job update is authoritative.  If the invoice cannot be created
        the job stays completed and the operator is told to invoice by hand.
        """
        if not self.is_manager:
            return self._reject("Only supervisors and admins can mark a job as complete.")
        if self.is_read_only:
            return self._reject("This job is already completed.")
        if self.customer is None:
            return self._reject("Please select a customer before marking the job as complete.")
        if self.vehicle is None:
            return self._reject("Please select a vehicle before marking the job as complete.")
        if not self.line_items:
            return self._reject("Please add at least one service before marking the job as complete.")
        if not self.job_id:
            return self._reject("Cannot mark a new job as complete. Please save the job first.")

        try:
            self.services.jobs.update(self.job_id, self.job_payload(JobStatus.COMPLETED))
        except ApiError as e:
            self._report(e, "Failed to mark job as complete. Please try again.")
            return False
        self.status = JobStatus.COMPLETED
        self.pending_capture = None

        try:
            invoice = self.services.invoices.create(self.invoice_payload()) or {}
        except ApiError as e:
            logging.error("invoice creation failed for job %s: %s", self.job_id, e)
            self._notify(
                "warning",
                "Job marked as complete, but invoice creation failed. Please create invoice manually.",
                **({"redirect": self.login_url, "delay": self.redirect_delay}
                   if isinstance(e, AuthError) else {}),
            )
            return True
        number = invoice.get("invoiceNumber") if isinstance(invoice, Mapping) else None
        self._notify(
            "success",
            f"Job marked as complete! Invoice {number or 'created'} has been generated and marked as paid.",
        )
        return True

    def delete(self) -> bool:
        if not self._guard_manager("delete jobs"):
            return False
        if not self.job_id:
            return self._reject("This job card has not been created yet.")
        try:
            self.services.jobs.delete(self.job_id)
        except ApiError as e:
            self._report(e, "Failed to delete job")
            return False
        self.deleted = True
        self._notify("success", "Job deleted")
        return True

    # ------------------------------------------------------------------
    # remote reconcile

    def apply_remote(self, job: Mapping[str, Any]) -> bool:
        """Re-apply the job store's record after a ``jobUpdated`` event."""
        if not self.job_id or ref_id(job) != self.job_id:
            return False
        # completed is terminal
        if job.get("status") and not self.is_read_only:
            self.status = JobStatus.from_remote(job["status"])
        if "services" in job:
            self.line_items = normalize_all(job.get("services"))
        if "notes" in job:
            self.notes = job.get("notes") or ""
        if "overallServiceComment" in job:
            self.overall_comment = job.get("overallServiceComment") or ""
        if job.get("technician"):
            self.technician_id = ref_id(job["technician"])
        self.job.update(job)
        return True


def _oil_payload(details: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    details = details or {}
    payload = {}
    for key in OIL_DETAIL_KEYS:
        value = str(details.get(key) or "").strip()
        if value:
            payload[key] = value
    return payload


def _capture_payload(entry: CatalogEntry, values, comments, parts) -> Dict[str, Any]:
    """Keep only what the catalog entry declares."""
    values = dict(values or {})
    if entry.sub_options:
        declared = {o.key: o for o in entry.sub_options}
        kept = {}
        for key, value in values.items():
            option = declared.get(key)
            if option is None:
                continue
            if option.kind == "multiselect":
                picked = value if isinstance(value, (list, tuple, set)) else [value]
                picked = [str(v) for v in picked if not option.options or str(v) in option.options]
                if picked:
                    kept[key] = picked
            elif option.kind == "select":
                if not option.options or str(value) in option.options:
                    kept[key] = str(value)
            else:
                kept[key] = str(value)
        values = kept
    else:
        values = {}

    parts = [str(p) for p in (parts or []) if str(p) in entry.allowed_parts]

    return {
        "subOptionValues": values,
        "comments": (comments or None) if entry.allow_comments else None,
        "partsUsed": parts or None,
    }
