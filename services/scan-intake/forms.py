"""Record form schemas: what a submitted employee or inventory record must satisfy."""

from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Department(str, Enum):
    ENGINEERING = "Engineering"
    HR = "Human Resources"
    SALES = "Sales"
    MARKETING = "Marketing"
    FINANCE = "Finance"
    OPERATIONS = "Operations"


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RecordForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, use_enum_values=True)

    def to_fields(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class EmployeeForm(RecordForm):
    full_name: str = Field(alias="fullName", min_length=2)
    email: str = Field(pattern=EMAIL_PATTERN)
    employee_id: str = Field(alias="employeeId", min_length=3)
    department: Department
    designation: str = Field(min_length=2)
    salary: float = Field(gt=0)
    join_date: date = Field(alias="joinDate")


class InventoryForm(RecordForm):
    name: str = Field(min_length=2)
    sku: str = Field(min_length=3)
    category: str = Field(min_length=2)
    supplier: str = ""
    price: float = Field(ge=0)
    quantity: int = Field(ge=0)


FORMS: dict[str, type[RecordForm]] = {
    "employees": EmployeeForm,
    "inventory": InventoryForm,
}
