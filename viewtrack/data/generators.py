"""
Synthetic Data Generator

Generates realistic catalog and view traffic for development and demos:
- Products with makers, categories, pricing and galleries
- Visits with device mix, referrers, countries and view durations
"""

import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from faker import Faker

from viewtrack.database.models import Product

fake = Faker()


# =============================================================================
# CONFIGURATION
# =============================================================================

CATEGORIES = [
    "Developer Tools",
    "Productivity",
    "Design Tools",
    "Marketing",
    "Artificial Intelligence",
    "Fintech",
    "Health & Fitness",
    "Education",
]

PRICING_TYPES = [("free", 0.4), ("freemium", 0.35), ("paid", 0.25)]

USER_AGENTS = [
    ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
     "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1", 0.35),
    ("Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
     "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36", 0.15),
    ("Mozilla/5.0 (iPad; CPU OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
     "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1", 0.08),
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
     "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36", 0.27),
    ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/605.1.15 "
     "(KHTML, like Gecko) Version/17.2 Safari/605.1.15", 0.15),
]

REFERRERS = [
    (None, 0.35),
    ("https://www.google.com/search?q=launch", 0.25),
    ("https://twitter.com/someone/status/1", 0.10),
    ("https://www.linkedin.com/feed/", 0.05),
    ("https://news.ycombinator.com/item?id=1", 0.05),
    ("https://blog.example.org/review", 0.05),
]

SOURCE_HINTS = [(None, 0.85), ("recommendation_feed", 0.10), ("recommendation_similar", 0.05)]

COUNTRIES = [("US", 0.40), ("GB", 0.12), ("IN", 0.12), ("DE", 0.08), ("CA", 0.07), ("FR", 0.06), (None, 0.15)]


def _weighted(choices):
    values, weights = zip(*choices)
    return random.choices(values, weights=weights)[0]


# =============================================================================
# GENERATORS
# =============================================================================

class ProductGenerator:
    """Generate a launch-platform product catalog"""

    def generate(self, n: int = 20) -> List[Product]:
        products = []
        for _ in range(n):
            name = f"{fake.word().title()}{random.choice(['ly', 'ify', 'Hub', 'AI', 'Kit', ''])}"
            pricing_type = _weighted(PRICING_TYPES)
            pricing = {"type": pricing_type}
            if pricing_type != "free":
                pricing.update({"amount": round(random.uniform(5, 99), 2), "currency": "USD"})

            products.append(
                Product(
                    product_id=uuid.uuid4(),
                    slug=f"{name.lower()}-{uuid.uuid4().hex[:6]}",
                    name=name,
                    tagline=fake.catch_phrase(),
                    description=fake.paragraph(nb_sentences=4),
                    thumbnail=fake.image_url(width=400, height=300),
                    gallery=[fake.image_url(width=1200, height=800) for _ in range(random.randint(1, 4))],
                    pricing=pricing,
                    status="published",
                    maker_name=fake.name(),
                    category_name=random.choice(CATEGORIES),
                    tags=fake.words(nb=random.randint(1, 4), unique=True),
                )
            )
        return products


@dataclass
class Visit:
    """One synthetic view start with its eventual duration"""
    product_id: uuid.UUID
    at: datetime
    user_id: Optional[str]
    client_ip: str
    user_agent: str
    referrer: Optional[str]
    source: Optional[str]
    country: Optional[str]
    duration_seconds: Optional[float]


class VisitGenerator:
    """
    Generate view traffic over a date range.

    Popularity follows a long tail across products; returning users revisit
    the same products, which exercises the unique-view window.
    """

    def __init__(self, product_ids: List[uuid.UUID], user_count: int = 200):
        self.product_ids = product_ids
        self.weights = [1.0 / (rank + 1) for rank in range(len(product_ids))]
        self.user_ids = [str(fake.unique.random_number(digits=8)) for _ in range(user_count)]
        self.anonymous_ips = [fake.ipv4_public() for _ in range(user_count * 2)]

    def generate(self, start: datetime, days: int, visits_per_day: int = 200) -> List[Visit]:
        visits = []
        for day in range(days):
            day_start = start + timedelta(days=day)
            for _ in range(max(0, int(random.gauss(visits_per_day, visits_per_day * 0.2)))):
                authenticated = random.random() < 0.45
                ended = random.random() < 0.8
                visits.append(
                    Visit(
                        product_id=random.choices(self.product_ids, weights=self.weights)[0],
                        at=day_start + timedelta(seconds=random.randint(0, 86_399)),
                        user_id=random.choice(self.user_ids) if authenticated else None,
                        client_ip=random.choice(self.anonymous_ips),
                        user_agent=_weighted(USER_AGENTS),
                        referrer=_weighted(REFERRERS),
                        source=_weighted(SOURCE_HINTS),
                        country=_weighted(COUNTRIES),
                        duration_seconds=round(random.lognormvariate(4.0, 0.9), 1) if ended else None,
                    )
                )
        visits.sort(key=lambda visit: visit.at)
        return visits
