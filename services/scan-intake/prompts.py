"""Per-domain instruction prompts for form and label field extraction.

Each prompt enumerates exactly the fields of its domain schema, with the
label variants found on Indian HR forms and product labels, and strict
JSON-only output rules.
"""

_JSON_SUFFIX = """

Rules:
- If handwritten text is ambiguous, infer from context.
- If a field is completely missing or illegible, return "Unknown" (string) or 0 (number).
- Add a "confidence" number between 0 and 1 describing how legible the document was.
- Do not return Markdown code blocks, just the JSON object."""

PROMPTS: dict[str, str] = {
    "employee": """You are an advanced OCR AI for Indian HR documents. Analyze this Employee Enrollment Form.

Extract the following fields into strict JSON:
1. fullName: Look for "Full Name".
2. email: Look for "Email Address".
3. department: Look for "Department".
4. designation: Look for "Job Role" or "Designation".
5. salary: Look for "Annual Salary" or "CTC". Return only the number (e.g., 500000). Remove currency symbols like ₹, Rs, INR, or commas.
6. joinDate: Look for "Join Date". Convert ANY date format found (e.g., "12th Jan 2024", "12/01/2024") into strict ISO format "YYYY-MM-DD".""" + _JSON_SUFFIX,

    "inventory": """You are an advanced OCR AI for retail inventory. Analyze this product label or supplier invoice line.

Extract the following fields into strict JSON:
1. name: The product name, usually the largest text ("Product", "Item", "Description").
2. sku: Look for "SKU", "Item Code", "Part No." or the digits printed under a barcode.
3. category: The product category or type (e.g., "Electronics", "Grocery", "Stationery").
4. supplier: Look for "Supplier", "Vendor", "Mfd. by" or "Marketed by".
5. price: Look for "MRP", "Unit Price" or "Rate". Return only the number (e.g., 499.5). Remove currency symbols like ₹, Rs, INR, or commas.
6. quantity: Look for "Qty", "Quantity", "Units" or "Pack of". Return only the number.""" + _JSON_SUFFIX,
}

TEXT_PREAMBLE = """The document was photographed and run through a text recognizer.
The raw recognized text follows between the markers. It may contain recognition
errors, broken lines and stray characters; use the field labels to locate values.

--- BEGIN TEXT ---
{raw_text}
--- END TEXT ---

"""


def text_prompt(domain: str, raw_text: str) -> str:
    """Prompt for the text-based path: recognized text followed by the domain instructions."""
    return TEXT_PREAMBLE.format(raw_text=raw_text.strip()) + PROMPTS[domain]
