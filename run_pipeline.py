#!/usr/bin/env python3
"""CLI para executar o pipeline de ingestão de editais do PNCP."""

import argparse
import json
import logging
import signal
import sys
import threading

from pydantic import ValidationError

import config
from db import init_db
from errors import PipelineError
from processing import ProcessingStateMachine
from scheduler import PipelineScheduler


def _print_json(data):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def cmd_run(sched: PipelineScheduler, args) -> int:
    result = sched.execute_run(lookback_days=args.dias, limit=args.limite)
    _print_json(result.model_dump())
    return 0 if result.status in ("completed", "conflict") else 1


def cmd_discover(sched: PipelineScheduler, args) -> int:
    result = sched.trigger_discovery(window_days=args.dias, limit=args.limite)
    _print_json(result.model_dump())
    return 0


def cmd_process(sched: PipelineScheduler, args) -> int:
    summary = sched.process_pending(args.limite)
    print(f"Selecionados: {summary.selected}, sucesso: {summary.succeeded}, erros: {summary.errors}")
    return 0 if not summary.errors else 1


def cmd_extract_url(sched: PipelineScheduler, args) -> int:
    record = sched.extract_url(args.url)
    _print_json(record.model_dump(mode="json"))
    return 0


def cmd_status(sched: PipelineScheduler, args) -> int:
    _print_json({
        "agendador": sched.get_status(),
        "processamento": sched.get_processing_status().model_dump(),
    })
    return 0


def cmd_history(sched: PipelineScheduler, args) -> int:
    entries = sched.get_execution_history(args.limite)
    if not entries:
        print("Nenhuma execução registrada")
        return 0
    for e in entries:
        print(
            f"#{e.id} {e.started_at:%Y-%m-%d %H:%M} {e.status.value:<9} "
            f"encontrados={e.candidates_found} ingeridos={e.records_ingested} "
            f"erros={e.error_count} duração={e.duration_seconds:.1f}s"
            + (f" ({e.message})" if e.message else "")
        )
    return 0


def cmd_configure(sched: PipelineScheduler, args) -> int:
    patch = {
        "run_at_local_time": args.hora,
        "enabled": args.ativo,
        "lookback_days": args.dias,
        "per_run_limit": args.limite,
    }
    cfg = sched.configure({k: v for k, v in patch.items() if v is not None})
    _print_json(cfg.model_dump(mode="json"))
    return 0


def cmd_reset(sched: PipelineScheduler, args) -> int:
    sm = sched.state_machine
    if args.all_failed:
        count = sm.reset_all_failed()
        print(f"{count} registro(s) com falha voltaram para Pending")
        return 0
    if sm.reset_failed(args.record_id):
        print(f"Registro {args.record_id} voltou para Pending")
        return 0
    print(f"Registro {args.record_id} não está em Failed")
    return 1


def cmd_serve(sched: PipelineScheduler, args) -> int:
    stop = threading.Event()

    def _handle_signal(signum, frame):
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    sched.start()
    status = sched.get_status()
    print(f"Agendador ativo. Próxima execução: {status.get('next_run_at') or 'desativada'}")
    stop.wait()
    return 0


COMMANDS = {
    "run": cmd_run,
    "discover": cmd_discover,
    "process": cmd_process,
    "extract-url": cmd_extract_url,
    "status": cmd_status,
    "history": cmd_history,
    "configure": cmd_configure,
    "reset": cmd_reset,
    "serve": cmd_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pipeline de ingestão de editais do PNCP")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Executa descoberta + processamento uma vez")
    p.add_argument("--dias", type=int, help="Dias de retroação (padrão: configuração salva)")
    p.add_argument("--limite", type=int, help="Máximo de editais processados (padrão: configuração salva)")

    p = sub.add_parser("discover", help="Só descobre e grava candidatos, sem extrair detalhes")
    p.add_argument("--dias", type=int, default=1, help="Dias de retroação (padrão: 1 = ontem)")
    p.add_argument("--limite", type=int, default=config.PNCP_DISCOVERY_LIMIT,
                   help=f"Máximo de candidatos (padrão: {config.PNCP_DISCOVERY_LIMIT})")

    p = sub.add_parser("process", help="Processa candidatos pendentes sem nova descoberta")
    p.add_argument("--limite", type=int, default=config.SCHEDULER_PER_RUN_LIMIT,
                   help=f"Máximo de editais (padrão: {config.SCHEDULER_PER_RUN_LIMIT})")

    p = sub.add_parser("extract-url", help="Extrai um único edital pela URL")
    p.add_argument("url", help="URL do edital, ex. https://pncp.gov.br/app/editais/<cnpj>/<ano>/<seq>")

    sub.add_parser("status", help="Mostra estado do agendador e do processamento")

    p = sub.add_parser("history", help="Lista as últimas execuções")
    p.add_argument("--limite", type=int, default=10, help="Quantidade de execuções (padrão: 10)")

    p = sub.add_parser("configure", help="Altera a configuração do agendador")
    p.add_argument("--hora", help="Horário diário HH:MM (fuso de Brasília)")
    group = p.add_mutually_exclusive_group()
    group.add_argument("--ativo", dest="ativo", action="store_true", default=None,
                       help="Ativa a execução diária")
    group.add_argument("--inativo", dest="ativo", action="store_false",
                       help="Desativa a execução diária")
    p.add_argument("--dias", type=int, help="Dias de retroação")
    p.add_argument("--limite", type=int, help="Máximo de editais por execução")

    p = sub.add_parser("reset", help="Reabre registros em Failed")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("--record-id", type=int, help="ID do registro")
    group.add_argument("--all-failed", action="store_true", help="Todos os registros em Failed")

    sub.add_parser("serve", help="Mantém o agendador diário rodando até SIGINT/SIGTERM")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    init_db()
    sched = PipelineScheduler(state_machine=ProcessingStateMachine())
    try:
        return COMMANDS[args.command](sched, args)
    except ValidationError as e:
        print(f"Configuração inválida: {e}", file=sys.stderr)
        return 2
    except PipelineError as e:
        print(f"Erro: {e}", file=sys.stderr)
        return 1
    finally:
        sched.stop()


if __name__ == "__main__":
    sys.exit(main())
