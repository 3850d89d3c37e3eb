from typing import Dict, List, Optional


CREDIT_PACKAGES: List[Dict] = [
    {
        "id": "starter",
        "name": "Starter",
        "credits": 10,
        "bonus_credits": 0,
        "price": 1900,
        "popular": False,
    },
    {
        "id": "basic",
        "name": "Basic",
        "credits": 30,
        "bonus_credits": 3,
        "price": 4900,
        "popular": True,
    },
    {
        "id": "pro",
        "name": "Pro",
        "credits": 60,
        "bonus_credits": 10,
        "price": 9900,
        "popular": False,
    },
    {
        "id": "mega",
        "name": "Mega",
        "credits": 150,
        "bonus_credits": 30,
        "price": 19900,
        "popular": False,
    },
]


def get_package(package_id: str) -> Optional[Dict]:
    key = str(package_id or "").strip().lower()
    for pkg in CREDIT_PACKAGES:
        if pkg["id"] == key:
            return pkg
    return None


def total_credits(pkg: Dict) -> int:
    return int(pkg.get("credits", 0)) + int(pkg.get("bonus_credits", 0))


def get_package_catalog() -> List[Dict]:
    data = []
    for pkg in CREDIT_PACKAGES:
        credits = total_credits(pkg)
        data.append(
            {
                **pkg,
                "total_credits": credits,
                "price_text": f"₩{pkg['price']:,}",
                "price_per_credit": pkg["price"] // max(1, pkg["credits"]),
            }
        )
    return data
