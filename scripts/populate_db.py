import os
import sys
import django
import random
from decimal import Decimal
from datetime import timedelta
from django.utils import timezone
from faker import Faker

# Add project root to Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set up Django environment
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'parcel_marketplace.settings')
django.setup()

from marketplace.compatibility import compatible_for_package
from marketplace.coordinator import coordinator
from marketplace.exceptions import MarketplaceError
from marketplace.models import PackageRequest, TripOffer, User
from marketplace.ratings import aggregator

fake = Faker()

# A handful of routes so that packages and trips actually meet
CITIES = ['Milan', 'Tunis', 'Paris', 'Lyon', 'Berlin', 'Munich']


def create_users(num_users=20):
    print(f"Creating {num_users} users...")
    users = []

    for _ in range(num_users):
        email = fake.unique.email()
        username = email.split('@')[0]
        user = User.objects.create_user(
            username=username,
            email=email,
            password='password123',
            first_name=fake.first_name(),
            last_name=fake.last_name(),
            display_name=fake.name(),
        )
        users.append(user)

    print(f"Created {len(users)} users.")
    return users


def random_route():
    return random.sample(CITIES, 2)


def create_packages(users, num_packages=30):
    print("Creating package requests...")
    packages = []
    today = timezone.now().date()

    for _ in range(num_packages):
        origin, destination = random_route()
        package = PackageRequest.objects.create(
            owner=random.choice(users),
            origin=origin,
            destination=destination,
            deadline=today + timedelta(days=random.randint(3, 30)),
            description=fake.sentence(),
            size=random.choice(['small', 'medium', 'large']),
            price=Decimal(random.uniform(5.0, 80.0)).quantize(Decimal('0.01')),
        )
        packages.append(package)

    print(f"Created {len(packages)} package requests.")
    return packages


def create_trips(users, num_trips=20):
    print("Creating trip offers...")
    trips = []
    today = timezone.now().date()

    for _ in range(num_trips):
        origin, destination = random_route()
        trip = TripOffer.objects.create(
            owner=random.choice(users),
            origin=origin,
            destination=destination,
            date=today + timedelta(days=random.randint(1, 25)),
            capacity=random.randint(1, 3),
            notes=fake.sentence(),
        )
        trips.append(trip)

    print(f"Created {len(trips)} trip offers.")
    return trips


def create_matches(packages):
    print("Matching packages with trips...")
    matches = []

    for package in packages:
        candidates = compatible_for_package(package)
        if not candidates:
            continue
        trip = candidates[0]
        try:
            outcome = coordinator.propose_match(package.pk, trip.pk, trip.owner_id)
        except MarketplaceError as e:
            print(f"  Skipped package {package.pk}: {e}")
            continue
        matches.append(outcome.match)

    print(f"Created {len(matches)} matches.")
    return matches


def complete_and_review(matches):
    print("Completing deliveries and leaving reviews...")
    reviews = 0

    for match in matches:
        # About half of the matches are delivered
        if random.random() < 0.5:
            continue
        coordinator.confirm_delivery(match.pk, actor_uid=match.sender_id)

        # 70% chance of the sender reviewing the traveler
        if random.random() < 0.7:
            aggregator.record_review(
                match.sender_id,
                match.traveler_id,
                random.randint(3, 5),
                package_id=match.package_id,
                comment=fake.paragraph(),
            )
            reviews += 1

    print(f"Created {reviews} reviews.")


def main():
    print("Starting database population...")

    users = create_users(num_users=20)
    packages = create_packages(users)
    create_trips(users)
    matches = create_matches(packages)
    complete_and_review(matches)

    print("Database population completed successfully!")


if __name__ == '__main__':
    main()
