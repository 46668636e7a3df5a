"""Thin adapters over the workshop REST endpoints used by job cards."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from workshop.api.client import WorkshopClient


def _list(data: Any) -> List[Dict]:
    return data if isinstance(data, list) else []


class JobStore:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def get(self, job_id: str) -> Dict:
        return self.client.get(f"/api/jobs/{job_id}")

    def create(self, job: Dict) -> Dict:
        return self.client.post("/api/jobs", job)

    def update(self, job_id: str, fields: Dict) -> Dict:
        return self.client.put(f"/api/jobs/{job_id}", fields)

    def delete(self, job_id: str) -> None:
        self.client.delete(f"/api/jobs/{job_id}")


class InvoiceStore:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def create(self, invoice: Dict) -> Dict:
        return self.client.post("/api/invoices", invoice)


class CommentStore:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def create(self, comment: Dict) -> Dict:
        return self.client.post("/api/comments", comment)

    def list_by_job(self, job_id: str) -> List[Dict]:
        return _list(self.client.get(f"/api/comments/job/{job_id}"))


class CatalogService:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def list(self) -> List[Dict]:
        return _list(self.client.get("/api/catalog"))

    def create(self, entry: Dict) -> Dict:
        return self.client.post("/api/catalog", entry)

    def delete(self, entry_id: str) -> None:
        self.client.delete(f"/api/catalog/{entry_id}")


class InventoryService:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def list(self) -> List[Dict]:
        return _list(self.client.get("/api/inventory"))


class CustomerDirectory:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def list(self, search: Optional[str] = None) -> List[Dict]:
        params = {"search": search} if search else None
        return _list(self.client.get("/api/customers", params=params))

    def create(self, fields: Dict) -> Dict:
        return self.client.post("/api/customers", fields)


class VehicleDirectory:
    def __init__(self, client: WorkshopClient) -> None:
        self.client = client

    def list(self, customer: Optional[str] = None, search: Optional[str] = None) -> List[Dict]:
        params = {k: v for k, v in (("customer", customer), ("search", search)) if v}
        return _list(self.client.get("/api/vehicles", params=params or None))

    def create(self, fields: Dict) -> Dict:
        return self.client.post("/api/vehicles", fields)


@dataclass
class Services:
    """Every remote collaborator a job card session talks to."""
    jobs: Any
    invoices: Any
    comments: Any
    catalog: Any
    inventory: Any
    customers: Any
    vehicles: Any

    @classmethod
    def from_client(cls, client: WorkshopClient) -> "Services":
        return cls(
            jobs=JobStore(client),
            invoices=InvoiceStore(client),
            comments=CommentStore(client),
            catalog=CatalogService(client),
            inventory=InventoryService(client),
            customers=CustomerDirectory(client),
            vehicles=VehicleDirectory(client),
        )
