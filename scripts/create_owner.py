# create_owner.py
# Usage: python scripts/create_owner.py <company-slug> <email> <password>
# Promotes an existing user to owner, or creates the owner inside the company.
# DATABASE_URL is read from the environment / .env like the API does.

import sys

from sqlmodel import Session, select

from carslab_crm.db.session import engine, init_db
from carslab_crm.models.company import Company
from carslab_crm.models.user import User, UserRole
from carslab_crm.utils.security import get_password_hash


def main(argv: list[str]) -> int:
    if len(argv) != 4:
        print("Usage: python scripts/create_owner.py <company-slug> <email> <password>")
        return 1

    _, slug, email, password = argv
    init_db()

    with Session(engine) as session:
        company = session.exec(select(Company).where(Company.slug == slug)).first()
        if not company:
            company = Company(name=slug, slug=slug)
            session.add(company)
            session.flush()
            print(f"Company {slug} created (id={company.id})")

        user = session.exec(select(User).where(User.email == email)).first()
        if user:
            user.role = UserRole.OWNER.value
            user.password_hash = get_password_hash(password)
            print(f"User {email} promoted to owner")
        else:
            user = User(
                company_id=company.id,
                email=email,
                full_name=email.split("@")[0],
                password_hash=get_password_hash(password),
                role=UserRole.OWNER.value,
            )
            print(f"Owner {email} created")
        session.add(user)
        session.commit()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
