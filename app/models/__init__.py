# Importing every domain model registers its table on Base.metadata and lets
# string relationships resolve across domains
from app.domain.patients.models import Patient, Visit
from app.domain.emr.models import MedicalRecord, Procedure, Prescription
from app.domain.pharmacy.models import Drug
from app.domain.lab.models import LabTest, LabOrder
from app.domain.inpatient.models import Room, BedAssignment, MaterialUsage
from app.domain.billing.models import Service, Billing, BillingItem, Payment

__all__ = [
    "Patient",
    "Visit",
    "MedicalRecord",
    "Procedure",
    "Prescription",
    "Drug",
    "LabTest",
    "LabOrder",
    "Room",
    "BedAssignment",
    "MaterialUsage",
    "Service",
    "Billing",
    "BillingItem",
    "Payment",
]
