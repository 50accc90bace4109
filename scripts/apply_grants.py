#!/usr/bin/env python
import argparse
import logging
import sys

from contracts.grant_contract import load_contract
from gerenciador_redshift.config_manager import ProviderConfig, load_config
from gerenciador_redshift.connection_manager import ConnectionRegistry
from gerenciador_redshift.errors import GrantError
from gerenciador_redshift.grant_manager import (
    DefaultPrivilegesManager,
    GrantManager,
    RoleGrantManager,
)
from gerenciador_redshift.logger import setup_logger

logger = logging.getLogger("apply_grants")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Reconcilia privilégios do Redshift a partir de um contrato."
    )
    parser.add_argument(
        "--config",
        help="Arquivo de configuração (padrão: config/config.yml)",
    )
    parser.add_argument(
        "--contract",
        required=True,
        help="Contrato YAML/JSON com grants, default_privileges e role_grants",
    )
    parser.add_argument(
        "--profile",
        help="Nome do perfil usado para resolver a senha (variável <PERFIL>_PASSWORD)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Apenas mostra os comandos planejados",
    )
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    setup_logger(cfg)
    rules = load_contract(args.contract)
    registry = ConnectionRegistry(ProviderConfig.from_dict(cfg, args.profile))
    managers = [
        (GrantManager(registry, rules.database), rules.grants),
        (DefaultPrivilegesManager(registry, rules.database), rules.default_privileges),
        (RoleGrantManager(registry, rules.database), rules.role_grants),
    ]
    failed = 0
    try:
        db = registry.connect(rules.database)
        for manager, configs in managers:
            for config in configs:
                try:
                    if args.dry_run:
                        plan = manager.plan(config)
                        with db.connection() as conn:
                            for stmt in plan:
                                print(stmt.render(conn))
                    else:
                        print(manager.create(config))
                except GrantError as e:
                    failed += 1
                    logger.error("Falha ao aplicar %s: %s", config, e)
    finally:
        registry.close_all()
    if failed:
        print(f"{failed} regra(s) falharam")
        return 1
    print("Sincronização concluída com sucesso")
    return 0


if __name__ == "__main__":
    sys.exit(main())
