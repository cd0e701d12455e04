from flask import Blueprint

consent_bp = Blueprint('consent_api', __name__)


@consent_bp.route('/api/consent/record', methods=['POST'])
@consent_bp.route('/consent/record', methods=['POST'])
def record_consent():
    from convertviral import runtime

    return runtime.record_consent_impl()


@consent_bp.route('/api/consent/record', methods=['GET'])
@consent_bp.route('/consent/record', methods=['GET'])
def get_consent_record():
    from convertviral import runtime

    return runtime.get_consent_record_impl()


@consent_bp.route('/api/consent/record', methods=['DELETE'])
@consent_bp.route('/consent/record', methods=['DELETE'])
def delete_consent_record():
    from convertviral import runtime

    return runtime.delete_consent_record_impl()
