"""Tests for the settings file, render options and bill files."""

import json

from bill_renderer import (
    DEFAULT_SETTINGS,
    BillData,
    RenderOptions,
    StoreSettings,
    load_bill_file,
    load_settings,
    save_settings,
)


class TestSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "settings.json"))
        assert settings == DEFAULT_SETTINGS
        settings["storeName"] = "Changed"
        assert DEFAULT_SETTINGS["storeName"] == "Vogue Prism"

    def test_file_overlays_defaults(self, settings_file):
        settings = load_settings(str(settings_file))
        assert settings["storeName"] == "Acme Store"
        assert settings["paperWidth"] == "80mm"

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path, caplog):
        path = tmp_path / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_settings(str(path)) == DEFAULT_SETTINGS
        assert "Failed to read settings" in caplog.text

    def test_non_object_is_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2]", encoding="utf-8")
        assert load_settings(str(path)) == DEFAULT_SETTINGS

    def test_save_then_load(self, tmp_path):
        path = str(tmp_path / "settings.json")
        settings = load_settings(path)
        settings.update(storeName="Café Ünïcode", gstNumber="29ABCDE1234F1Z5")
        save_settings(settings, path)
        assert load_settings(path) == settings
        with open(path, encoding="utf-8") as f:
            assert "Café Ünïcode" in f.read()


class TestRecords:
    def test_default_settings_match_default_options(self):
        assert RenderOptions.from_dict(DEFAULT_SETTINGS) == RenderOptions()

    def test_options_from_settings(self):
        options = RenderOptions.from_dict({"currencySymbol": "$", "renderScale": "2", "jpegQuality": 70})
        assert options.currency_symbol == "$"
        assert options.scale == 2.0
        assert options.jpeg_quality == 70

    def test_store_settings_tolerate_missing_and_null(self):
        store = StoreSettings.from_dict({"storeName": "Acme Store", "phone": None})
        assert store == StoreSettings(store_name="Acme Store")

    def test_bill_data_from_lookup_record(self):
        bill = BillData.from_dict({"billNumber": 42, "createdAt": "2024-01-15T10:30:00", "total": 5,
                                   "paymentMode": "upi", "upiAmount": 5})
        assert bill.bill_number == "42"
        assert bill.subtotal == 0
        assert bill.cash_amount is None
        assert bill.upi_amount == 5


class TestBillFiles:
    def test_bill_and_items_shape(self, bill_file, bill, items):
        loaded_bill, loaded_items = load_bill_file(str(bill_file))
        assert loaded_bill == bill
        assert loaded_items == items

    def test_items_embedded_in_bill(self, tmp_path):
        path = tmp_path / "bill.json"
        path.write_text(json.dumps({
            "billNumber": "INV-9",
            "createdAt": "2024-02-01T18:05:00",
            "total": 450,
            "items": [{"productName": "Cap", "size": "", "quantity": "3", "unitPrice": 150, "totalPrice": 450}],
        }), encoding="utf-8")
        bill, items = load_bill_file(str(path))
        assert bill.bill_number == "INV-9"
        assert items[0].quantity == 3
        assert items[0].size is None
