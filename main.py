'''
Main entry point for the Quiz Entitlement Backend. This runs the necessary setup code like
initialising the DB and responding startup arguments before handing over control-flow to Flask.

This application has command line options that must be specified as environment variables because
this application runs directly as a flask app (in a dev environment) and it also can be served over
UWSGI for a production use-case.

We've designed the backend primarily for UWSGI which mounts the flask app with no possibility to
forward command line arguments to the underlying application. Thus we cannot use argparse or flask's
@click.options as there's no way to specify them in the UWSGI manifest hence the design decision to
use environment variables.
'''

import pathlib
import os
import flask
import threading
import time
import datetime
import signal
import types
import logging
import logging.handlers
import configparser
import sys
import dataclasses
import traceback

import base
import backend
import cache
import finalizer
import notifier
import reconciler
import remote_store
import server

log                                                 = logging.Logger('QUIZ')
webhook_loggers: list[base.AsyncWebhookLogHandler] = []

@dataclasses.dataclass
class GenerateRedeemCodesArgs:
    question_set_id: str = ''
    validity_days:   int = 0
    quantity:        int = 0

@dataclasses.dataclass
class Webhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:                     str                            = ''
    db_path:                      str                            = ''
    db_path_is_uri:               bool                           = False
    log_path:                     str                            = ''
    print_tables:                 bool                           = False
    dev:                          bool                           = False
    unsafe_logging:               bool                           = False
    validity_days:                int                            = base.GRANT_VALIDITY_DAYS

    generate_redeem_codes:        str                            = ''
    parsed_generate_redeem_codes: GenerateRedeemCodesArgs | None = None

    webhooks:                     list[Webhook]                  = dataclasses.field(default_factory=list)

def signal_handler(sig: int, _frame: types.FrameType | None):
    global stop_maintenance_thread

    # NOTE: Wake up the thread and set the flag to terminate it
    stop_maintenance_thread = True
    maintenance_thread_event.set()

    # NOTE: Unregister handler and resume the default handler by re-raising it
    _ = signal.signal(sig, signal.SIG_DFL)
    signal.raise_signal(sig)

def backend_maintenance_thread_entry_point(db_path: str, db_path_is_uri: bool):
    global stop_maintenance_thread
    while not stop_maintenance_thread:
        start_unix_ts_s:    float = time.time()
        next_day_unix_ts_s: float = base.round_unix_ts_ms_to_next_day(int(start_unix_ts_s * 1000)) / 1000.0
        sleep_time_s:       float = next_day_unix_ts_s - start_unix_ts_s

        next_day_date:      datetime.datetime = datetime.datetime.fromtimestamp(next_day_unix_ts_s)
        next_day_str:       str               = next_day_date.strftime('%Y-%m-%d')

        # Sleep on CV until sleep time has elapsed, or, we get woken up by SIG handler.
        while int(sleep_time_s) > 0 and not stop_maintenance_thread:
            assert sleep_time_s <= base.SECONDS_IN_DAY
            log.info(f'Sleeping for {base.format_seconds(sleep_time_s)} to prune DB entries at UTC {next_day_str}')
            _ = maintenance_thread_event.wait(timeout=sleep_time_s)
            sleep_time_s = next_day_unix_ts_s - int(time.time())

        # We only reach here if the sleep time has elapsed OR woken up. If sleep time has elapsed,
        # then we can go and prune the records from the DB
        if stop_maintenance_thread:
            break

        # NOTE: Prune rows from the database
        yesterday_str: str = datetime.datetime.fromtimestamp(next_day_unix_ts_s - base.SECONDS_IN_DAY).strftime('%Y-%m-%d')
        try:
            prune_result = backend.PruneResult()
            with backend.OpenDBAtPath(db_path=db_path, uri=db_path_is_uri) as db:
                prune_result = backend.prune_by_unix_ts_ms(sql_conn=db.sql_conn, unix_ts_ms=int(next_day_unix_ts_s * 1000))

            if prune_result.success and not prune_result.already_done_by_someone_else:
                log_line: str = 'Daily pruning for {} completed. Pruned grant requests/redeem codes={}/{}'.format(yesterday_str,
                                                                                                              prune_result.grant_requests,
                                                                                                              prune_result.redeem_codes)
                log.info(log_line)
                for it in webhook_loggers:
                    it.emit_text(log_line)
        except Exception:
            log.error(f'Daily pruning for {yesterday_str} failed: {traceback.format_exc()}')

def parse_generate_redeem_codes_arg(arg: str, err: base.ErrorSink) -> GenerateRedeemCodesArgs | None:
    """Parse a <question_set_id>:<validity_days>:<quantity> string into the GenerateRedeemCodesArgs result"""
    result: GenerateRedeemCodesArgs | None = None
    if len(arg) == 0:
        return result

    parts = arg.split(':')
    if len(parts) != 3:
        err.msg_list.append(f"Failed to parse generate redeem codes argument, expected 3 arguments delimited by ':' (had {len(parts)}) (arg was: {arg})")
        return result

    question_set_id = parts[0].strip()
    if len(question_set_id) == 0:
        err.msg_list.append(f'Failed to parse question set ID, it was empty (arg was: {arg})')
        return result

    try:
        validity_days = int(parts[1])
        quantity      = int(parts[2])
    except Exception:
        err.msg_list.append(f'Failed to parse validity days ({parts[1]}) or quantity ({parts[2]}) as integers (arg was: {arg})')
        return result

    result = GenerateRedeemCodesArgs(question_set_id=question_set_id, validity_days=validity_days, quantity=quantity)
    return result

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('QUIZ_BACKEND_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser                              = configparser.ConfigParser()
        _                                       = ini_parser.read(filenames=result.ini_path)

        base_section: configparser.SectionProxy = ini_parser['base']
        result.db_path                          = base_section.get(option='db_path',               fallback='')
        result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri', fallback=False)
        result.log_path                         = base_section.get(option='log_path',              fallback='')
        result.print_tables                     = base_section.getboolean(option='print_tables',   fallback=False)
        result.dev                              = base_section.getboolean(option='dev',            fallback=False)
        result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging', fallback=False)
        result.validity_days                    = base_section.getint(option='validity_days',      fallback=base.GRANT_VALIDITY_DAYS)
        result.generate_redeem_codes            = base_section.get(option='generate_redeem_codes', fallback='')

        webhook_index = 0
        while True:
            webhook_label: str = f'webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_enabled: bool | None               = webhook_section.getboolean('enabled')
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name == None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing \'name\'")
                sys.exit(1)

            if webhook_url == None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing \'url\'")
                sys.exit(1)

            if webhook_enabled == None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing \'enabled\'")
                sys.exit(1)

            webhook_index += 1
            result.webhooks.append(Webhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path                      = os.getenv('QUIZ_BACKEND_DB_PATH',                      result.db_path)
    result.db_path_is_uri               = base.os_get_boolean_env('QUIZ_BACKEND_DB_PATH_IS_URI', result.db_path_is_uri)
    result.log_path                     = os.getenv('QUIZ_BACKEND_LOG_PATH',                     result.log_path)
    result.print_tables                 = base.os_get_boolean_env('QUIZ_BACKEND_PRINT_TABLES',   result.print_tables)
    result.dev                          = base.os_get_boolean_env('QUIZ_BACKEND_DEV',            result.dev)
    result.unsafe_logging               = base.os_get_boolean_env('QUIZ_BACKEND_UNSAFE_LOGGING', result.unsafe_logging)

    validity_days_str                   = os.getenv('QUIZ_BACKEND_VALIDITY_DAYS', str(result.validity_days))
    try:
        result.validity_days            = int(validity_days_str)
    except ValueError:
        err.msg_list.append(f'Failed to parse validity days ({validity_days_str}) as an integer')
    if result.validity_days < 1:
        err.msg_list.append(f'Validity days must be at least 1, received {result.validity_days}')

    result.generate_redeem_codes        = os.getenv('QUIZ_BACKEND_GENERATE_REDEEM_CODES',        result.generate_redeem_codes)
    result.parsed_generate_redeem_codes = parse_generate_redeem_codes_arg(result.generate_redeem_codes, err)

    if len(result.db_path) == 0:
        err.msg_list.append('DB path was not specified (QUIZ_BACKEND_DB_PATH)')

    if len(result.log_path) == 0:
        result.log_path = 'quiz-backend.log'

    return result

# Every module logger in the project, handlers are attached to all of them at startup
def project_loggers() -> list[logging.Logger]:
    result = [log, backend.log, cache.log, finalizer.log, notifier.log, reconciler.log, remote_store.log, server.log]
    return result

def entry_point() -> flask.Flask:
    log_formatter = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    # NOTE: Setup console logger
    if 1:
        for it in project_loggers():
            it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err = base.ErrorSink()
    parsed_args: ParsedArgs   = parse_args(err)
    base.UNSAFE_LOGGING       = parsed_args.unsafe_logging
    base.DB_PATH              = parsed_args.db_path
    base.DB_PATH_IS_URI       = parsed_args.db_path_is_uri
    if err.has():
        log.error(f'Failed to startup, invalid configuration options:\n  ' + '\n  '.join(err.msg_list))
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger: logging.handlers.RotatingFileHandler | None = None
    if 1:
        file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
        file_logger.setFormatter(log_formatter)
        for it in project_loggers():
            it.addHandler(file_logger)

    # NOTE: Equip the webhook URL if it's configured
    for it in parsed_args.webhooks:
        if it.enabled:
            webhook_logger = base.AsyncWebhookLogHandler(webhook_url=it.url, display_name=it.name)
            webhook_logger.setLevel(logging.WARNING)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for logger in project_loggers():
                logger.addHandler(webhook_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not parsed_args.db_path_is_uri:
        try:
            pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
    if len(err.msg_list) > 0:
        log.error(f"{err.msg_list}")
        sys.exit(1)

    # NOTE: Dump some startup diagnostics
    assert db.sql_conn is not None
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, err=err)
    if len(err.msg_list) > 0:
        log.error(f"{err.msg_list}")
        sys.exit(1)

    # NOTE: Check the DB contents in dev mode, this walks every row so it's not done in production
    if parsed_args.dev:
        if not backend.verify_db(db.sql_conn, err):
            log.error(f'DB failed verification:\n  {err.build()}')
            sys.exit(1)

    # NOTE: Generate redeem codes if requested
    if parsed_args.parsed_generate_redeem_codes:
        args  = parsed_args.parsed_generate_redeem_codes
        codes = backend.generate_redeem_codes(sql_conn        = db.sql_conn,
                                              question_set_id = args.question_set_id,
                                              validity_days   = args.validity_days,
                                              quantity        = args.quantity,
                                              created_by      = 'admin',
                                              unix_ts_ms      = base.now_unix_ts_ms(),
                                              err             = err)
        if err.has():
            log.error(f'Failed to generate redeem codes:\n  {err.build()}')
        else:
            label = ''
            for index, it in enumerate(codes):
                if index:
                    label += '\n'
                label += f'  {index:02d} {it.code} (set={it.question_set_id}, expires={base.readable_unix_ts_ms(it.code_expiry_unix_ts_ms)})'
            print(f'Generated {len(codes)} redeem codes\n{label}')
        sys.exit(1)

    # NOTE: Handle printing of the DB to standard out if requested
    if parsed_args.print_tables:
        base.print_db_to_stdout(db.sql_conn)
        sys.exit(1)

    startup_log = '\n'
    if parsed_args.dev:
        startup_log += "######################################\n"
        startup_log += "###                                ###\n"
        startup_log += "###        Dev Mode Enabled        ###\n"
        startup_log += "###                                ###\n"
        startup_log += "######################################\n"

    startup_log += f'Quiz Entitlement Backend\n{info_string}\n'
    startup_log += f'  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    if 1:
        label = ' (URI)' if parsed_args.db_path_is_uri else ''
        startup_log += f'    DB loaded from: {db.path}{label}\n'
        startup_log += f'    Logging to: {parsed_args.log_path}\n'
        startup_log += f'    Grant validity: {parsed_args.validity_days} days\n'
    if parsed_args.unsafe_logging:
        startup_log += f'    Unsafe logging enabled (this must NOT be used in production)\n'
    for it in parsed_args.webhooks:
        if it.enabled:
            startup_log += f'    Webhook Logger: Enabled (display name: {it.name})\n'

    if parsed_args.dev:
        startup_log += "######################################\n"
        startup_log += "###                                ###\n"
        startup_log += "###        Dev Mode Enabled        ###\n"
        startup_log += "###                                ###\n"
        startup_log += "######################################\n"

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    # NOTE: Running the application just in Flask (e.g. local development) we need a way to signal
    # to the long-running maintenance thread to terminate itself, otherwise the application hangs
    # on exit forever as the thread is never terminated. Under UWSGI the same handlers are only
    # honoured with `py-call-osafterfork`.
    _ = signal.signal(signal.SIGINT, signal_handler)  # Ctrl+C
    _ = signal.signal(signal.SIGTERM, signal_handler) # Terminate
    _ = signal.signal(signal.SIGQUIT, signal_handler) # Quit

    # Dispatch a long-running thread that wakes up every 00:00 UTC to prune the DB. Under UWSGI
    # every process runs one of these, the prune transaction lets exactly one of them do the work
    # and the rest no-op.
    thread = threading.Thread(target=backend_maintenance_thread_entry_point, args=(parsed_args.db_path, parsed_args.db_path_is_uri))
    thread.start()

    result: flask.Flask = server.init(testing_mode   = False,
                                      db_path        = db.path,
                                      db_path_is_uri = parsed_args.db_path_is_uri,
                                      validity_days  = parsed_args.validity_days)

    # NOTE: Add flask to our global logger
    if 1:
        result.logger.addHandler(console_logger)
        if file_logger:
            result.logger.addHandler(file_logger)
        for it in webhook_loggers:
            result.logger.addHandler(it)

    # The flask runner/UWSGI takes over from here and runs the application for
    # us across multiple processes if necessary. We'll close our db connection
    # here. Each request we receive will open their own connection the DB.
    db.sql_conn.close()

    return result

# Flask entry point
stop_maintenance_thread  = False
maintenance_thread_event = threading.Event()
flask_app: flask.Flask   = entry_point()
