"""
Synthetic election content for creator bots.

Titles, positions, candidate names and locations are drawn from fixed
vocabularies so generated elections look plausible in the dashboards.
"""

import random
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from .models import ElectionSpec, Position

ELECTION_TITLES = [
    'Student Council Election',
    'Faculty Board Selection',
    'Community Leadership Vote',
    'Department Representative Election',
    'Annual Board Election',
    'Executive Committee Selection',
    'Club President Election',
    'Class Representative Vote',
    'Organization Leadership',
    'Team Captain Selection',
]

POSITIONS = [
    'President',
    'Vice President',
    'Secretary',
    'Treasurer',
    'Public Relations Officer',
    'Events Coordinator',
    'Technical Lead',
    'Communications Director',
    'Operations Manager',
    'Membership Chair',
]

FIRST_NAMES = [
    'James', 'Mary', 'John', 'Patricia', 'Robert', 'Jennifer', 'Michael', 'Linda',
    'William', 'Elizabeth', 'David', 'Barbara', 'Richard', 'Susan', 'Joseph', 'Jessica',
    'Thomas', 'Sarah', 'Charles', 'Karen', 'Christopher', 'Nancy', 'Daniel', 'Lisa',
    'Matthew', 'Betty', 'Anthony', 'Margaret', 'Mark', 'Sandra', 'Donald', 'Ashley',
]

LAST_NAMES = [
    'Smith', 'Johnson', 'Williams', 'Brown', 'Jones', 'Garcia', 'Miller', 'Davis',
    'Rodriguez', 'Martinez', 'Hernandez', 'Lopez', 'Gonzalez', 'Wilson', 'Anderson', 'Thomas',
    'Taylor', 'Moore', 'Jackson', 'Martin', 'Lee', 'Thompson', 'White', 'Harris',
    'Sanchez', 'Clark', 'Ramirez', 'Lewis', 'Robinson', 'Walker', 'Young', 'Allen',
]

LOCATIONS = [
    'Stanford University, CA',
    'MIT, Cambridge, MA',
    'Harvard University, MA',
    'UC Berkeley, CA',
    'Columbia University, NY',
    'Princeton University, NJ',
    'Yale University, CT',
    'University of Chicago, IL',
    'Northwestern University, IL',
    'Duke University, NC',
]

POSITIONS_RANGE = (2, 5)
CANDIDATES_RANGE = (2, 6)
START_DELAY_RANGE = (300, 600)        # 5-10 minutes after creation
DURATION_RANGE = (172800, 259200)     # 2-3 days


def new_election_uuid() -> str:
    return 'elec-' + str(uuid.uuid4())


def generate_positions(rng: random.Random) -> List[Position]:
    positions = []
    for i in range(rng.randint(*POSITIONS_RANGE)):
        candidates = [
            f"{rng.choice(FIRST_NAMES)} {rng.choice(LAST_NAMES)}"
            for _ in range(rng.randint(*CANDIDATES_RANGE))
        ]
        positions.append(Position(title=POSITIONS[i % len(POSITIONS)], candidates=candidates))
    return positions


def generate_election(
    bot_index: int,
    now: float,
    rng: Optional[random.Random] = None,
    election_uuid: Optional[str] = None,
) -> ElectionSpec:
    """
    Generate random election content for creator bot `bot_index`.

    The election opens 5-10 minutes after `now` and stays open 2-3 days.
    Voter count, Merkle root and creator are filled in by the creator bot.
    """
    rng = rng or random.Random()
    start_time = int(now) + rng.randint(*START_DELAY_RANGE)
    positions = generate_positions(rng)
    total_candidates = sum(len(p.candidates) for p in positions)
    year = datetime.fromtimestamp(now).year

    return ElectionSpec(
        uuid=election_uuid or new_election_uuid(),
        title=f"Test Election #{bot_index + 1} - {rng.choice(ELECTION_TITLES)} {year}",
        description=(
            f"Automated test election for system verification. This election contains "
            f"{len(positions)} positions with a total of {total_candidates} candidates."
        ),
        location=rng.choice(LOCATIONS),
        start_time=start_time,
        end_time=start_time + rng.randint(*DURATION_RANGE),
        positions=positions,
        is_public=True,
        allow_anonymous=rng.random() > 0.5,
        allow_delegation=rng.random() > 0.3,
    )


def calculate_eligible_voters(total_voters: int, percentage: float, pool_size: int) -> int:
    """Size of an election's registered voter set, capped by the eligible pool."""
    return min(pool_size, int(total_voters * percentage))


def select_voter_set(addresses: Sequence[str], count: int, rng: Optional[random.Random] = None) -> List[str]:
    """Random subset of `count` addresses, without repeats."""
    rng = rng or random.Random()
    return rng.sample(list(addresses), min(count, len(addresses)))
