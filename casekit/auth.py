"""
Authentication routes and utilities
"""
from datetime import datetime, timezone
from flask import Blueprint, render_template, redirect, url_for, request, flash, jsonify
from flask_login import login_user, logout_user, current_user, login_required
from casekit import db, login_manager
from casekit.models import User, AuditLog

auth_bp = Blueprint('auth', __name__)


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID"""
    return db.session.get(User, int(user_id))


def log_audit_event(event_type, description):
    """Log audit event for the current user"""
    if not current_user.is_authenticated:
        return
    audit_log = AuditLog(
        user_id=current_user.id,
        event_type=event_type,
        event_description=description,
        ip_address=request.remote_addr,
    )
    db.session.add(audit_log)
    db.session.commit()


def _wants_json():
    return request.is_json or request.accept_mimetypes.best == 'application/json'


@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    """Admin login"""
    if current_user.is_authenticated:
        return redirect(url_for('index'))

    if request.method == 'POST':
        data = request.get_json(silent=True) or request.form
        email = (data.get('email') or '').strip().lower()
        password = data.get('password') or ''
        remember = bool(data.get('remember', False))

        if not email:
            return _login_failed('email', 'Email is required.')
        if not password:
            return _login_failed('password', 'Password is required.')

        user = User.query.filter_by(email=email).first()

        if user and user.check_password(password):
            if not user.is_active:
                return _login_failed('email', 'Account is disabled. Please contact support.')

            login_user(user, remember=remember)
            user.last_login_at = datetime.now(timezone.utc)
            db.session.commit()

            log_audit_event('user_login', f'User {email} logged in')

            if _wants_json():
                return jsonify({'ok': True, 'user': user.to_dict()})
            next_page = request.args.get('next')
            if next_page and next_page.startswith('/'):
                return redirect(next_page)
            return redirect(url_for('index'))

        return _login_failed('password', 'Invalid email or password.')

    return render_template('auth/login.html')


def _login_failed(field, message):
    if _wants_json():
        return jsonify({'ok': False, 'field': field, 'error': message}), 401
    flash(message, 'error')
    return render_template('auth/login.html'), 401


@auth_bp.route('/logout')
@login_required
def logout():
    """User logout"""
    log_audit_event('user_logout', f'User {current_user.email} logged out')
    logout_user()
    flash('You have been logged out.', 'info')
    return redirect(url_for('auth.login'))


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({'ok': True, 'user': current_user.to_dict()})
