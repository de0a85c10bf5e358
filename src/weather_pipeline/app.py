from datetime import datetime, date

from flask import Flask, request
from flask_restx import Api, Resource, fields, abort
from flask_cors import CORS

from .repository import WeatherRepository

MAX_PER_PAGE = 1000

# Initialize Flask app
app = Flask(__name__)
CORS(app)

# Initialize Flask-RESTX API
api = Api(
    app,
    version='1.0',
    title='Weather Data API',
    description='Read-only access to ingested weather observations and yearly statistics',
    doc='/docs'
)

# Namespaces
station_ns = api.namespace('api/stations', description='Weather stations')
weather_ns = api.namespace('api/weather', description='Daily observations and yearly statistics')

# Models for Swagger
station_model = api.model('Station', {
    'station_id': fields.String(required=True),
    'state': fields.String(),
    'created_at': fields.DateTime(),
    'updated_at': fields.DateTime(),
})

observation_model = api.model('Observation', {
    'station_id': fields.String(required=True),
    'observation_date': fields.Date(required=True),
    'max_temperature_celsius': fields.Float(),
    'min_temperature_celsius': fields.Float(),
    'precipitation_cm': fields.Float(),
    'created_at': fields.DateTime(),
})

statistic_model = api.model('YearStatistic', {
    'station_id': fields.String(required=True),
    'year': fields.Integer(required=True),
    'avg_max_temperature_celsius': fields.Float(),
    'avg_min_temperature_celsius': fields.Float(),
    'total_precipitation_cm': fields.Float(),
    'observation_count': fields.Integer(),
    'valid_max_temp_count': fields.Integer(),
    'valid_min_temp_count': fields.Integer(),
    'valid_precipitation_count': fields.Integer(),
    'updated_at': fields.DateTime(),
})

pagination_model = api.model('Pagination', {
    'page': fields.Integer(),
    'per_page': fields.Integer(),
    'total': fields.Integer(),
    'pages': fields.Integer(),
    'has_next': fields.Boolean(),
    'has_prev': fields.Boolean(),
})

station_response = api.model('StationResponse', {
    'data': fields.List(fields.Nested(station_model)),
    'pagination': fields.Nested(pagination_model)
})

observation_response = api.model('ObservationResponse', {
    'data': fields.List(fields.Nested(observation_model)),
    'pagination': fields.Nested(pagination_model)
})

statistic_response = api.model('YearStatisticResponse', {
    'data': fields.List(fields.Nested(statistic_model)),
    'pagination': fields.Nested(pagination_model)
})

PAGINATION_PARAMS = {
    'page': 'Page number (default: 1)',
    'per_page': f'Records per page (default: 50, max: {MAX_PER_PAGE})',
}


def get_repository():
    return WeatherRepository()


def page_args():
    page = max(request.args.get('page', 1, type=int), 1)
    per_page = min(max(request.args.get('per_page', 50, type=int), 1), MAX_PER_PAGE)
    return page, per_page


def date_arg(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        abort(400, f"{name} must be a date in YYYY-MM-DD format")


def year_arg(name='year'):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        abort(400, f"{name} must be an integer")


@station_ns.route('/')
class StationList(Resource):
    @station_ns.doc('get_stations', params=dict(PAGINATION_PARAMS, state='Filter by state'))
    @station_ns.marshal_with(station_response)
    def get(self):
        page, per_page = page_args()
        return get_repository().query_stations(
            state=request.args.get('state'), page=page, per_page=per_page)


@weather_ns.route('/')
class ObservationList(Resource):
    @weather_ns.doc('get_observations', params=dict(
        PAGINATION_PARAMS,
        station_id='Filter by station ID',
        start_date='Start date (YYYY-MM-DD)',
        end_date='End date (YYYY-MM-DD)',
    ))
    @weather_ns.marshal_with(observation_response)
    def get(self):
        page, per_page = page_args()
        return get_repository().query_observations(
            station_id=request.args.get('station_id'),
            start_date=date_arg('start_date'),
            end_date=date_arg('end_date'),
            page=page,
            per_page=per_page,
        )


@weather_ns.route('/stats')
class StatisticList(Resource):
    @weather_ns.doc('get_statistics', params=dict(
        PAGINATION_PARAMS,
        station_id='Filter by station ID',
        year='Filter by year',
    ))
    @weather_ns.marshal_with(statistic_response)
    def get(self):
        page, per_page = page_args()
        return get_repository().query_statistics(
            station_id=request.args.get('station_id'),
            year=year_arg(),
            page=page,
            per_page=per_page,
        )


@api.route('/api/health')
class HealthCheck(Resource):
    @api.doc('health_check')
    def get(self):
        return {'status': 'healthy', 'timestamp': datetime.utcnow().isoformat()}
