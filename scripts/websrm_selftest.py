"""
FiscalBridge - WEB-SRM Offline Self-Test
==========================================
Walks one sample order through map → canonicalize → sign → verify → headers
→ receipt reference, without touching the network or the database.

Uses the configured profile when WEBSRM_* settings are complete, otherwise a
throwaway HMAC profile.

Usage:
    python scripts/websrm_selftest.py
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.exceptions import ConfigurationError
from modules.websrm.canonical import canonicalize
from modules.websrm.client import generate_idempotency_key
from modules.websrm.enums import ReceiptFormat
from modules.websrm.field_mapper import map_order, validate_transaction
from modules.websrm.headers import build_headers
from modules.websrm.profile import ComplianceProfile, load_profile
from modules.websrm.receipt import build_receipt_reference

results = []

SAMPLE_ORDER = {
    "id": "a1b2c3d4-selftest-0001",
    "order_type": "dine_in",
    "order_status": "completed",
    "payment_method": "credit_card",
    "items_subtotal": "20.00",
    "gst_amount": "1.00",
    "qst_amount": "1.995",
    "total_amount": "22.995",
    "created_at": "2025-01-06T14:30:00Z",
    "items": [
        {"menu_item_name": "Poutine gratinée", "menu_item_price": "12.00", "quantity": 1, "item_total": "12.00"},
        {"menu_item_name": "Café au lait", "menu_item_price": "4.00", "quantity": 2, "item_total": "8.00"},
    ],
}


def report(step, desc, passed, note=""):
    status = "PASS" if passed else "FAIL"
    results.append((step, desc, status, note))
    icon = "✅" if passed else "❌"
    print(f"  {icon} {step}: {desc} {'- ' + note if note else ''}")


def _profile() -> ComplianceProfile:
    try:
        return load_profile()
    except ConfigurationError as e:
        print(f"  (settings incomplete: {e.message}; using a throwaway HMAC profile)")
        return ComplianceProfile(
            device_id="SELFTEST-DEVICE",
            certification_code="SELFTEST",
            signing_algorithm="HMAC-SHA256",
            shared_secret="selftest-secret",
        ).validate()


def main() -> int:
    print("\n" + "=" * 60)
    print("  WEB-SRM offline self-test")
    print("=" * 60)

    profile = _profile()

    result = map_order(SAMPLE_ORDER, profile.utc_offset_hours)
    record = result.record
    report("ST-01", "Order maps to a transaction", True,
           f"montST={record.subtotal} montTPS={record.gst} montTVQ={record.qst} montTot={record.total}")
    report("ST-02", "No unknown categorical values", not result.warnings,
           ", ".join(str(w) for w in result.warnings))

    errors = validate_transaction(record)
    report("ST-03", "Transaction passes local validation", not errors, "; ".join(errors))

    unsigned = canonicalize(record.to_payload(include_signature=False))
    signature = profile.signer.sign(unsigned)
    report("ST-04", "Payload signed", bool(signature), f"{profile.signing_algorithm}, {len(signature)} chars")
    report("ST-05", "Signature verifies", profile.signer.verify(unsigned, signature))

    headers = build_headers(profile.certification_code, profile.device_id,
                            profile.software_version, signature)
    report("ST-06", "Headers built", "X-Signature" in headers, ", ".join(sorted(headers)))

    key = generate_idempotency_key(profile.environment, profile.device_id,
                                   record.id_trans, record.transaction_time, record.total,
                                   record.operation)
    report("ST-07", "Idempotency key", len(key) == 64, key[:16] + "...")

    confirmation = {"idTrans": record.id_trans, "idTransSrm": "SRM-SELFTEST", "dtConfirmation": "20250106093001"}
    for fmt in ReceiptFormat:
        ref = build_receipt_reference(confirmation, fmt, base_url=profile.receipt_base_url or None)
        report("ST-08", f"Receipt reference ({fmt.value})", bool(ref), ref)

    failed = [r for r in results if r[2] == "FAIL"]
    print(f"\n  {len(results) - len(failed)}/{len(results)} passed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
