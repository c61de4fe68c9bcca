"""
Initialize database tables, the case-files bucket and the first admin.
Run this on first deploy instead of flask db upgrade.

Set RESET_DB=1 environment variable to drop and recreate all tables.
Set ADMIN_EMAIL / ADMIN_PASSWORD to create the first admin user.
"""
import os
import sys

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from casekit import create_app, db
from casekit.models import User
from casekit.services.aws_service import StorageError, ensure_bucket


def create_admin(email, password, name=''):
    """Create the admin user unless one exists for ``email``. Returns True if created."""
    email = (email or '').strip().lower()
    if not email or not password:
        return False
    if User.query.filter_by(email=email).first():
        return False
    user = User(email=email, name=name or 'Admin', active=True)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return True


def init_db():
    """Create all database tables."""
    app = create_app(os.getenv('FLASK_ENV', 'production'))

    with app.app_context():
        # create_app already honours RESET_DB; create_all is a no-op for existing tables
        print("Creating database tables...")
        db.create_all()
        print("✅ Database tables created successfully!")

        try:
            print(ensure_bucket())
        except StorageError as e:
            print(f"Bucket setup skipped: {e}")

        email = os.getenv('ADMIN_EMAIL', '')
        if create_admin(email, os.getenv('ADMIN_PASSWORD', ''), os.getenv('ADMIN_NAME', '')):
            print(f"✅ Admin user {email.strip().lower()} created")
        elif email:
            print(f"Admin user {email.strip().lower()} already exists (or no password given)")


if __name__ == '__main__':
    init_db()
