"""Generate sample bulk upload spreadsheets for manual testing."""
import random
import sys
from pathlib import Path

from marketplace.services.spreadsheet import (
    COL_BRAND,
    COL_CATEGORY,
    COL_CONDITION,
    COL_DESCRIPTION,
    COL_IMAGES,
    COL_NAME,
    COL_PRICE,
    COL_SKU,
    COL_STOCK,
    TEMPLATE_COLUMNS,
    XLSX,
    write_table,
)
from marketplace.models.shop import ProductCondition

SPEC_COLUMNS = ["Spec: RAM", "Spec: Storage", "Spec: Screen Size"]

BRANDS = {
    "Samsung": ["Galaxy A15", "Galaxy S24", "Galaxy Tab A9"],
    "Tecno": ["Spark 20", "Camon 30", "Pova 6"],
    "Infinix": ["Hot 40", "Note 40", "Smart 8"],
    "HP": ["ProBook 450", "EliteBook 840", "Pavilion 15"],
    "Lenovo": ["IdeaPad 3", "ThinkPad E14", "Tab M10"],
}

RAM = ["2GB", "4GB", "8GB", "16GB"]
STORAGE = ["64GB", "128GB", "256GB", "512GB"]
SCREENS = ["6.1 inches", "6.6 inches", "10.1 inches", "14 inches", "15.6 inches"]


def _category(model: str) -> str:
    if "Tab" in model:
        return "Tablets"
    if any(word in model for word in ("Book", "Pad", "Pavilion")):
        return "Laptops"
    return "Smartphones"


def generate_rows(num_rows: int, error_rate: float = 0.1) -> list[list[str]]:
    """
    Build random upload rows. Roughly ``error_rate`` of them carry a mistake
    (negative stock, bad price or unknown condition).

    Args:
        num_rows: Number of product rows to generate
        error_rate: Fraction of rows with a deliberate error
    """
    columns = TEMPLATE_COLUMNS + SPEC_COLUMNS
    rows = []
    for i in range(num_rows):
        brand = random.choice(list(BRANDS))
        model = random.choice(BRANDS[brand])
        values = {
            COL_NAME: f"{brand} {model}",
            COL_CATEGORY: _category(model),
            COL_BRAND: brand,
            COL_SKU: f"SAMPLE-{i + 1:05d}",
            COL_PRICE: str(random.randrange(80_000, 1_500_000, 500)),
            COL_STOCK: str(random.randint(0, 50)),
            COL_CONDITION: random.choice([c.value for c in ProductCondition]),
            COL_DESCRIPTION: f"{brand} {model} in good working order",
            COL_IMAGES: (
                f"https://example.com/images/{i + 1}-front.jpg"
                if random.random() > 0.3
                else ""
            ),
            "Spec: RAM": random.choice(RAM),
            "Spec: Storage": random.choice(STORAGE),
            "Spec: Screen Size": random.choice(SCREENS) if random.random() > 0.2 else "",
        }

        if random.random() < error_rate:
            broken = random.choice([COL_STOCK, COL_PRICE, COL_CONDITION])
            values[broken] = {COL_STOCK: "-3", COL_PRICE: "free", COL_CONDITION: "BROKEN"}[broken]

        rows.append([values.get(column, "") for column in columns])
    return rows


def main():
    """Parse arguments and write the sample file."""
    if len(sys.argv) < 2:
        print("Usage: python scripts/generate_sample_upload.py <num_rows> [output_file]")
        print("Example: python scripts/generate_sample_upload.py 150 sample_upload.xlsx")
        sys.exit(1)

    num_rows = int(sys.argv[1])
    output_file = Path(sys.argv[2] if len(sys.argv) > 2 else f"sample_upload_{num_rows}.csv")
    file_format = XLSX if output_file.suffix.lower() == ".xlsx" else "csv"

    content = write_table(TEMPLATE_COLUMNS + SPEC_COLUMNS, generate_rows(num_rows), file_format)
    output_file.write_bytes(content)
    print(f"✅ Successfully generated {num_rows:,} rows in {output_file}")
    if num_rows > 200:
        print("⚠️ Uploads are limited to 200 rows; this file will be rejected as a whole")


if __name__ == "__main__":
    main()
