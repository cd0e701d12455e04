from flask import Blueprint

from convertviral.services.cache_service import SHORT_CACHE_TTL, cached_json_response

convert_bp = Blueprint('convert_api', __name__)


def _runtime_cache():
    from convertviral import runtime

    return runtime.get_cache()


@convert_bp.route('/api/formats', methods=['GET'])
def list_formats():
    from convertviral import runtime

    return runtime.list_formats_impl()


@convert_bp.route('/api/formats', methods=['POST'])
def conversion_matrix():
    from convertviral import runtime

    return runtime.conversion_matrix_impl()


@convert_bp.route('/api/upload', methods=['POST'])
def upload_file():
    from convertviral import runtime

    return runtime.upload_file_impl()


@convert_bp.route('/api/convert', methods=['POST'])
def create_conversion():
    from convertviral import runtime

    return runtime.create_conversion_impl()


@convert_bp.route('/api/convert', methods=['GET'])
@cached_json_response(_runtime_cache, ttl=SHORT_CACHE_TTL)
def get_conversion_status():
    from convertviral import runtime

    return runtime.get_conversion_status_impl()


@convert_bp.route('/api/download', methods=['GET'])
def get_download_url():
    from convertviral import runtime

    return runtime.get_download_url_impl()
