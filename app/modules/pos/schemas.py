from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime


# Sync Schemas
class BranchReport(BaseModel):
    """Reporte de una sucursal tal como lo entrega el proveedor POS"""
    location: Dict[str, Any] = Field(default_factory=dict, description="Datos de la sucursal (id, address)")
    sales: List[Dict[str, Any]] = Field(default_factory=list)


class POSSyncRequest(BaseModel):
    branches: List[BranchReport] = Field(..., min_length=1)


class POSSyncError(BaseModel):
    external_sale_id: Optional[str] = None
    reason: str


class POSSyncResult(BaseModel):
    processed: int = 0
    created: int = 0
    existing: int = 0
    errors: List[POSSyncError] = []


# Transaction Schemas
class POSTransactionItemOut(BaseModel):
    id: UUID
    code: Optional[str] = None
    name: str
    quantity: int
    price: int

    class Config:
        from_attributes = True


class POSTransactionOut(BaseModel):
    id: UUID
    external_sale_id: str
    sequence_number: Optional[str] = None
    serial_number: Optional[str] = None
    location_id: Optional[str] = None
    address: Optional[str] = None
    status: Optional[str] = None
    transaction_type: Optional[str] = None
    transaction_date_time: datetime
    sale_amount: int
    tip_amount: int
    total_amount: int
    items: List[POSTransactionItemOut] = []
    has_document: bool = False

    class Config:
        from_attributes = True


class POSTransactionList(BaseModel):
    transactions: List[POSTransactionOut]
    total: int
    limit: int
    offset: int


class POSTransactionFilters(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    has_document: Optional[bool] = None
    location_id: Optional[str] = None
