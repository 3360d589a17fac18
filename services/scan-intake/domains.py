"""Domain extraction schemas: the fields the model fills for each record type.

The pipeline is generic; employee and inventory differ only in the data below.
"""

from pydantic import BaseModel

from models import FieldKind, FieldSpec
from prompts import PROMPTS


class IdentifierRule(BaseModel):
    """How the record identifier is synthesized at confirmation."""

    field: str
    prefix: str
    digits: int
    only_when_blank: bool = False


class ExtractionSchema(BaseModel):
    domain: str
    collection: str
    fields: list[FieldSpec]
    prompt: str
    # result field -> record field; identity when absent
    draft_fields: dict[str, str] = {}
    identifier: IdentifierRule | None = None

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def record_field(self, name: str) -> str:
        return self.draft_fields.get(name, name)


EMPLOYEE_SCHEMA = ExtractionSchema(
    domain="employee",
    collection="employees",
    fields=[
        FieldSpec(name="fullName", kind=FieldKind.STRING, description="Full name of the employee"),
        FieldSpec(name="email", kind=FieldKind.STRING, description="Email address"),
        FieldSpec(name="department", kind=FieldKind.STRING, description="Department"),
        FieldSpec(name="designation", kind=FieldKind.STRING, description="Job role or designation"),
        FieldSpec(name="salary", kind=FieldKind.NUMBER, description="Annual salary (CTC) as a plain number"),
        FieldSpec(name="joinDate", kind=FieldKind.DATE, description="Join date in YYYY-MM-DD format"),
    ],
    prompt=PROMPTS["employee"],
    identifier=IdentifierRule(field="employeeId", prefix="EMP-", digits=4),
)

INVENTORY_SCHEMA = ExtractionSchema(
    domain="inventory",
    collection="inventory",
    fields=[
        FieldSpec(name="name", kind=FieldKind.STRING, description="Product name"),
        FieldSpec(name="sku", kind=FieldKind.STRING, description="SKU or item code"),
        FieldSpec(name="category", kind=FieldKind.STRING, description="Product category"),
        FieldSpec(name="supplier", kind=FieldKind.STRING, description="Supplier or manufacturer"),
        FieldSpec(name="price", kind=FieldKind.NUMBER, description="Unit price as a plain number"),
        FieldSpec(name="quantity", kind=FieldKind.NUMBER, description="Quantity on the label"),
    ],
    prompt=PROMPTS["inventory"],
    identifier=IdentifierRule(field="sku", prefix="SKU-", digits=6, only_when_blank=True),
)

SCHEMAS: dict[str, ExtractionSchema] = {
    EMPLOYEE_SCHEMA.domain: EMPLOYEE_SCHEMA,
    INVENTORY_SCHEMA.domain: INVENTORY_SCHEMA,
}


def get_schema(domain: str) -> ExtractionSchema | None:
    return SCHEMAS.get(domain)
