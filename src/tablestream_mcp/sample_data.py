"""Deterministic sample employee dataset."""

import random
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .models import EMPLOYEE_SCHEMA

DEPARTMENTS = ['Engineering', 'Sales', 'Marketing', 'HR', 'Finance', 'Operations']
LOCATIONS = ['New York', 'San Francisco', 'Chicago', 'Los Angeles', 'Miami', 'Seattle', 'Boston']
POSITIONS = {
    'Engineering': ['Software Engineer', 'Senior Developer', 'Tech Lead', 'Staff Engineer', 'Principal Engineer'],
    'Sales': ['Sales Representative', 'Account Manager', 'Sales Associate'],
    'Marketing': ['Marketing Specialist', 'Content Manager', 'Marketing Manager', 'Digital Marketer'],
    'HR': ['HR Specialist', 'HR Manager', 'Senior HR Specialist'],
    'Finance': ['Financial Analyst', 'Senior Analyst', 'Financial Planner'],
    'Operations': ['Operations Manager', 'Operations Specialist'],
}
NAMES = [
    'John Smith', 'Sarah Johnson', 'Mike Brown', 'Lisa Davis', 'David Wilson',
    'Emily Garcia', 'James Martinez', 'Maria Rodriguez', 'Robert Taylor', 'Jennifer Anderson',
    'William Thomas', 'Susan Jackson', 'Christopher White', 'Karen Harris', 'Matthew Martin',
    'Nancy Thompson', 'Daniel Garcia', 'Helen Robinson', 'Paul Clark', 'Sandra Rodriguez',
    'Mark Lewis', 'Dorothy Lee', 'Steven Walker', 'Betty Hall', 'Kenneth Allen',
]

START_RANGE = (date(2018, 1, 1), date(2022, 12, 31))
PROMOTION_END = date(2024, 12, 31)


def _random_date(rng: random.Random, start: date, end: date) -> date:
    return start + timedelta(days=rng.randint(0, (end - start).days))


def generate_employees(names: Sequence[str] = NAMES, seed: Optional[int] = 42) -> List[Dict[str, Any]]:
    """One employee per name, with ids starting at 1.

    Salaries fall in 60k-100k, roughly 40% of employees are remote and about
    30% have never been promoted (empty ``lastPromoted``).
    """
    rng = random.Random(seed)
    employees = []
    for employee_id, name in enumerate(names, start=1):
        department = rng.choice(DEPARTMENTS)
        start_date = _random_date(rng, *START_RANGE)
        promoted = rng.random() > 0.3
        employees.append({
            'employeeId': employee_id,
            'employeeName': name,
            'location': rng.choice(LOCATIONS),
            'startDate': start_date.isoformat(),
            'department': department,
            'salary': rng.randint(60000, 99999),
            'position': rng.choice(POSITIONS[department]),
            'isRemote': rng.random() > 0.6,
            'lastPromoted': _random_date(rng, start_date, PROMOTION_END).isoformat() if promoted else '',
        })
    return employees


def write_csv(path: str, names: Sequence[str] = NAMES, seed: Optional[int] = 42) -> Path:
    """Write the sample dataset to ``path``, creating parent directories."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(generate_employees(names, seed), columns=EMPLOYEE_SCHEMA.names)
    frame['isRemote'] = frame['isRemote'].map({True: 'true', False: 'false'})
    frame.to_csv(target, index=False)
    return target
