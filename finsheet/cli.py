import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from .config import TABLE_BACKENDS, UNMATCHED_POLICIES, load_config
from .drive_service import GoogleDriveDownloader, LocalFileSource
from .errors import ConfigurationError
from .json_service import InterpretationClient
from .merger import TableMerger
from .orchestrator import PipelineCapabilities, run_pipeline
from .parse_service import DocumentParseClient
from .storage import prepare_paths
from .table_store import build_table_store
from .types import FileDescriptor, ProgressSnapshot

STAGE_LABELS = {
    "download": "Téléchargement",
    "parse": "Parsing",
    "interpret": "Interprétation",
    "persist": "Écriture",
    "completed": "Terminé",
}


def parse_drive_files(values: List[str]) -> List[FileDescriptor]:
    """`ID` ou `ID:NOM` → FileDescriptor (le nom par défaut est `<ID>.pdf`)."""
    files = []
    for value in values:
        file_id, _, name = value.partition(":")
        files.append(FileDescriptor(id=file_id, name=name or f"{file_id}.pdf"))
    return files


def print_progress(snapshot: ProgressSnapshot) -> None:
    name = snapshot.current_file_name or "lot"
    label = STAGE_LABELS.get(snapshot.current_stage, snapshot.current_stage)
    print(f"[{snapshot.overall_progress:3d}%] {name} → {label}")


def main(argv: Optional[List[str]] = None) -> None:
    # Charger .env avant toute lecture d'os.getenv (config/services)
    load_dotenv(find_dotenv(usecwd=True), override=False)

    parser = argparse.ArgumentParser(description="Pipeline: rapports financiers PDF → parsing → modèle → tableau.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--input", help="Dossier local contenant les rapports PDF à traiter.")
    source.add_argument(
        "--drive-file",
        action="append",
        metavar="ID[:NOM]",
        help="Identifiant Google Drive d'un PDF (option répétable).",
    )
    parser.add_argument("--target", required=True, help="Identifiant du tableau cible (nom CSV ou document Firestore).")
    parser.add_argument("--mode", choices=("auto", "create", "update"), default="auto",
                        help="auto: CREATE si le tableau existant a moins de 2 lignes, sinon UPDATE.")
    parser.add_argument("--table-backend", choices=TABLE_BACKENDS, default=None, help="Backend du tableau (défaut via env TABLE_BACKEND=csv)")
    parser.add_argument("--unmatched", choices=UNMATCHED_POLICIES, default=None,
                        help="Mode UPDATE: libellés absents du tableau ignorés ou ajoutés en nouvelles lignes.")
    parser.add_argument("--out-root", required=False, help="Dossier racine de sortie (défaut: uploads)")
    parser.add_argument("--max-batch", type=int, default=None, help="Taille maximale d'un lot (défaut via env LLAMAPARSE_BATCH_SIZE=10)")
    parser.add_argument("--verbose", action="store_true", help="Logs détaillés (DEBUG)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    try:
        cfg = load_config(
            out_root=args.out_root,
            max_batch_size=args.max_batch,
            unmatched_policy=args.unmatched,
            table_backend=args.table_backend,
        )
    except ConfigurationError as e:
        print(f"❌ Configuration invalide → {e}")
        sys.exit(1)

    if args.input:
        local = LocalFileSource(args.input)
        files = local.list_files()
        downloader = local
        if not files:
            print("Aucun fichier PDF trouvé.")
            sys.exit(0)
    else:
        files = parse_drive_files(args.drive_file)
        downloader = GoogleDriveDownloader()

    merger = TableMerger(column_batch_size=cfg.column_batch_size, unmatched_policy=cfg.unmatched_policy)
    table_store = build_table_store(cfg.table_backend, cfg.out_root, merger)
    parse_client = DocumentParseClient(
        cfg.llamaparse_api_key,
        base_url=cfg.llamaparse_base_url,
        timeout=cfg.processing_timeout,
        poll_interval=cfg.poll_interval,
    )
    interpreter = InterpretationClient(max_response_chars=cfg.max_response_chars)
    capabilities = PipelineCapabilities.from_services(downloader, parse_client, interpreter, table_store)
    paths = prepare_paths(args.target, cfg.out_root)

    print(f"{len(files)} fichier(s) PDF → cible: {args.target} (sorties: {paths.run_dir})")
    try:
        # Les identifiants invalides doivent échouer avant le premier fichier.
        parse_client.validate_credentials()
        interpreter.validate_configuration()
        result = asyncio.run(
            run_pipeline(
                files,
                None if args.mode == "auto" else args.mode,
                capabilities,
                on_progress=print_progress,
                target_id=args.target,
                max_batch_size=cfg.max_batch_size,
                artifacts_dir=paths.run_dir,
            )
        )
    except KeyboardInterrupt:
        print("Interrompu par l'utilisateur.")
        sys.exit(130)
    except ConfigurationError as e:
        print(f"❌ Lot refusé → {e}")
        sys.exit(1)

    for name in result.successful_files:
        print(f"✅ {name}")
    for task in result.file_tasks:
        if task.error:
            print(f"❌ {task.file_name} → {task.error}")
    for warning in result.warnings:
        print(f"⚠️  {warning.message}")
    if result.persist_error:
        print(f"❌ Écriture finale en échec → {result.persist_error}")

    print(
        f"Fichiers: {result.stats.files_processed}/{len(files)} | Lignes: {result.stats.line_items_found} | "
        f"Périodes: {result.stats.periods_found} | Durée: {result.stats.processing_time_ms} ms"
    )
    if result.failed_files or result.persist_error:
        sys.exit(2)


if __name__ == "__main__":
    main()
