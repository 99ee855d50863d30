# Common pytest fixtures for all test modules
import tempfile
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from uuid import UUID

import pytest
from pydantic import BaseModel

from sheetrecords import config
from sheetrecords.xlsx_common import CommaList


# Test Enums
class Color(Enum):
    RED = "red"
    GREEN = "green"
    BLUE = "blue"


# Test Models
class Order(BaseModel):
    """Order with one field of each common kind."""

    cost: Decimal
    date_created: datetime
    id: UUID
    is_processed: bool
    items: int
    reference: str


class Person(BaseModel):
    dob: date
    first_name: str
    id: UUID
    last_name: str
    middle_name: str | None = None


class Car(BaseModel):
    id: int
    make: str
    model: str
    color: Color = Color.RED
    mileage: float | None = None


class Tagged(BaseModel):
    name: str
    tags: CommaList = []


class Empty(BaseModel):
    pass


def make_orders(count: int, start: int = 0) -> list[Order]:
    return [
        Order(
            cost=Decimal(f"{idx}.25"),
            date_created=datetime(2023, 1, 1 + idx % 28, 12, 30, idx % 60),
            id=UUID(int=idx + 1),
            is_processed=idx % 2 == 0,
            items=idx * 3,
            reference=f"REF-{idx:04d}",
        )
        for idx in range(start, start + count)
    ]


@pytest.fixture
def orders():
    """Ten orders with distinct values."""
    return make_orders(10)


@pytest.fixture
def people():
    return [
        Person(
            dob=date(1980, 5, 17),
            first_name="Ada",
            id=UUID("12345678-1234-5678-1234-567812345678"),
            last_name="Lovelace",
        ),
        Person(
            dob=date(1991, 12, 1),
            first_name="Alan",
            id=UUID("87654321-4321-8765-4321-876543218765"),
            last_name="Turing",
            middle_name="Mathison",
        ),
    ]


@pytest.fixture
def cars():
    return [
        Car(id=1, make="Volvo", model="240", color=Color.BLUE, mileage=120500.5),
        Car(id=2, make="Fiat", model="Panda"),
        Car(id=3, make="Saab", model="900", color=Color.GREEN),
    ]


@pytest.fixture
def temp_file():
    """Temporary file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
        yield Path(f.name)
    Path(f.name).unlink(missing_ok=True)


@pytest.fixture
def temp_config():
    """
    Provides a temporary config that can be safely changed in test functions.

    After the test the config will be reset to default.
    """
    yield config

    # Reset the globally changed config to default.
    config.load_config()
