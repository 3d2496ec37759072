"""
Logging utilities for the compensation engine
"""

import os
import csv
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional


def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None):
    """
    Setup application logging with the specified configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, logs to console only.
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging_config = {
        'level': numeric_level,
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        'datefmt': '%Y-%m-%d %H:%M:%S',
    }

    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        logging_config['filename'] = log_file
        logging_config['filemode'] = 'a'

    logging.basicConfig(**logging_config)

    return logging.getLogger(__name__)


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    if hasattr(value, 'value'):
        return value.value
    return str(value)


def log_calculation_step(step: str, data: Dict[str, Any] = None, log_file: Optional[str] = None,
                         level: int = logging.INFO):
    """
    Log one calculation step as a JSON record.

    Args:
        step: Name of the step (e.g. "variable_pay", "nrr")
        data: Inputs and outputs worth keeping for audit
        log_file: Optional path to an additional JSON-lines file
        level: Log level for the record
    """
    logger = logging.getLogger(__name__)
    record = {
        'step': step,
        'data': data or {},
        'timestamp': datetime.now().isoformat(),
    }
    line = json.dumps(record, default=_json_default)
    logger.log(level, line)

    if log_file:
        try:
            with open(log_file, 'a') as f:
                f.write(line + '\n')
        except IOError as e:
            logger.error(f"Failed to write to log file {log_file}: {e}")


class CorrelationFilter(logging.Filter):
    """
    Filter that adds a run correlation ID to log records
    """
    def __init__(self, correlation_id=None):
        super().__init__()
        self.correlation_id = correlation_id or datetime.now().strftime("%Y%m%d%H%M%S%f")

    def filter(self, record):
        record.correlation_id = self.correlation_id
        return True


class JsonFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging
    """
    def format(self, record):
        log_record = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno
        }

        if record.exc_info:
            log_record['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'correlation_id'):
            log_record['correlation_id'] = record.correlation_id

        return json.dumps(log_record)


class LoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that appends context (employee, month) to log messages
    """
    def __init__(self, logger, extra=None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        context_str = ' '.join(f'{k}={v}' for k, v in self.extra.items())
        return f"{msg} [{context_str}]", kwargs


class PayoutRunLogger:
    """Collects per-employee steps of a payout run and writes JSON and CSV run logs."""

    def __init__(self, log_dir: str = 'logs', run_label: Optional[str] = None):
        os.makedirs(log_dir, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        label = f"_{run_label}" if run_label else ""
        self.base_filename = os.path.join(log_dir, f'payout_run{label}_{timestamp}')

        self.log_data = {
            'start_time': datetime.now().isoformat(),
            'steps': [],
            'overall_status': 'Pending',
            'total_steps': 0,
            'successful_steps': 0,
            'failed_steps': 0
        }
        self._open_steps: Dict[str, Dict[str, Any]] = {}
        self.logger = logging.getLogger(__name__)

    def log_step_start(self, step_name: str) -> None:
        step_log = {
            'name': step_name,
            'start_time': datetime.now().isoformat(),
            'status': 'Running',
            'details': {},
            'components': [],
            'warnings': [],
            'errors': []
        }
        self.log_data['steps'].append(step_log)
        self.log_data['total_steps'] += 1
        self._open_steps[step_name] = step_log

    def _step(self, step_name: Optional[str]) -> Dict[str, Any]:
        if step_name is not None:
            return self._open_steps[step_name]
        return self.log_data['steps'][-1]

    def log_step_warning(self, message: str, step_name: Optional[str] = None) -> None:
        self._step(step_name)['warnings'].append(message)

    def log_step_success(self, components: List[str] = None, details: Dict[str, Any] = None,
                         step_name: Optional[str] = None) -> None:
        step = self._step(step_name)
        step.update({
            'status': 'Success',
            'end_time': datetime.now().isoformat(),
            'components': components or [],
            'details': details or {}
        })
        self.log_data['successful_steps'] += 1

    def log_step_failure(self, error_message: str, exception: Exception = None,
                         step_name: Optional[str] = None) -> None:
        step = self._step(step_name)
        step.update({
            'status': 'Failed',
            'end_time': datetime.now().isoformat(),
            'errors': [
                {
                    'message': error_message,
                    'exception_type': str(type(exception).__name__) if exception else None,
                    'exception_details': str(exception) if exception else None
                }
            ]
        })
        self.log_data['failed_steps'] += 1

    def finalize(self) -> Dict[str, str]:
        if self.log_data['failed_steps'] > 0:
            self.log_data['overall_status'] = 'Partial Failure'
        elif self.log_data['successful_steps'] == self.log_data['total_steps']:
            self.log_data['overall_status'] = 'Success'

        self.log_data['end_time'] = datetime.now().isoformat()

        log_files = {
            'json': f'{self.base_filename}.json',
            'csv': f'{self.base_filename}.csv'
        }

        with open(log_files['json'], 'w') as f:
            json.dump(self.log_data, f, indent=2, default=_json_default)

        self._write_csv_log(log_files['csv'])
        self.logger.info(f"Payout run log written to {log_files['json']}")

        return log_files

    def _write_csv_log(self, csv_path: str) -> None:
        with open(csv_path, 'w', newline='') as csvfile:
            csv_writer = csv.writer(csvfile)

            csv_writer.writerow([
                'Employee', 'Status', 'Start Time', 'End Time',
                'Components', 'Warnings', 'Errors'
            ])

            for step in self.log_data['steps']:
                csv_writer.writerow([
                    step.get('name', ''),
                    step.get('status', ''),
                    step.get('start_time', ''),
                    step.get('end_time', ''),
                    ', '.join(map(str, step.get('components', []))),
                    ', '.join(step.get('warnings', [])),
                    ', '.join([
                        f"{err.get('message', '')} ({err.get('exception_type', '')})"
                        for err in step.get('errors', [])
                    ])
                ])

            csv_writer.writerow([])
            csv_writer.writerow(['Overall Summary'])
            csv_writer.writerow(['Total Employees', self.log_data['total_steps']])
            csv_writer.writerow(['Successful', self.log_data['successful_steps']])
            csv_writer.writerow(['Failed', self.log_data['failed_steps']])
            csv_writer.writerow(['Overall Status', self.log_data['overall_status']])
