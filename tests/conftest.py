import json

import pytest

from bill_renderer import BillData, BillItem, StoreSettings


@pytest.fixture
def bill():
    return BillData(
        bill_number="INV-1001",
        created_at="2024-01-15T10:30:00",
        subtotal=1000,
        discount_percent=10,
        discount_amount=100,
        total=900,
        payment_mode="cash",
    )


@pytest.fixture
def items():
    return [BillItem(product_name="Widget", quantity=2, unit_price=450, total_price=900)]


@pytest.fixture
def store():
    return StoreSettings(
        store_name="Acme Store",
        address_line1="12 Market Road",
        address_line2="Chennai 600001",
        phone="9876543210",
        gst_number="33ABCDE1234F1Z5",
    )


@pytest.fixture
def many_items():
    return [
        BillItem(product_name=f"Item {n}", quantity=1, unit_price=100 + n, total_price=100 + n,
                 size="L" if n % 2 else None)
        for n in range(1, 121)
    ]


@pytest.fixture
def bill_file(tmp_path):
    path = tmp_path / "INV-1001.json"
    path.write_text(json.dumps({
        "bill": {
            "billNumber": "INV-1001",
            "createdAt": "2024-01-15T10:30:00",
            "subtotal": 1000,
            "discountPercent": 10,
            "discountAmount": 100,
            "total": 900,
            "paymentMode": "cash",
        },
        "items": [
            {"productName": "Widget", "quantity": 2, "unitPrice": 450, "totalPrice": 900},
        ],
    }), encoding="utf-8")
    return path


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"storeName": "Acme Store", "phone": "9876543210"}), encoding="utf-8")
    return path
