from __future__ import annotations

import re

from packages.shared.schemas.order import ShippingAddressV1

_ES_POSTAL_CODE = re.compile(r"^\d{5}$")
_ES_PHONE = re.compile(r"^(?:\+34)?[6-9]\d{8}$")


def validate_address(address: ShippingAddressV1) -> dict[str, str]:
    """Return field errors keyed by field name; empty when the address may be sent."""

    errors: dict[str, str] = {}

    if not address.full_name.strip():
        errors["full_name"] = "El nombre completo es obligatorio"

    if not address.street_line1.strip():
        errors["street_line1"] = "La dirección es obligatoria"

    if not address.city.strip():
        errors["city"] = "La ciudad es obligatoria"

    if not address.country_code.strip():
        errors["country_code"] = "El país es obligatorio"

    postal_code = address.postal_code.strip()
    if not postal_code:
        errors["postal_code"] = "El código postal es obligatorio"
    elif address.country_code.strip().upper() == "ES" and not _ES_POSTAL_CODE.match(postal_code):
        errors["postal_code"] = "El código postal debe tener 5 dígitos"

    phone = re.sub(r"\s", "", address.phone_number or "")
    if phone and address.country_code.strip().upper() == "ES" and not _ES_PHONE.match(phone):
        errors["phone_number"] = "Introduce un teléfono válido"

    return errors
