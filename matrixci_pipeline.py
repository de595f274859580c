# matrixci_pipeline.py
# Toolchain matrix for a Rust crate: tests on four toolchains, plus extra
# jobs for formatting, coverage, docs and a FreeBSD cross build.
# Docs are published from master by the doc-build job.
from __future__ import annotations

from matrixci.dsl import (
    allow_failure,
    axis,
    cache,
    deploy,
    include,
    pipeline as build_pipeline,
    sh,
    steps,
)

# cargo installs go into the leased cache copy so they persist between runs
CARGO_ENV = 'export CARGO_HOME="$MATRIXCI_CACHE_DIR/.cargo" PATH="$MATRIXCI_CACHE_DIR/.cargo/bin:$PATH"; '


def cargo(name, run):
    return sh(name, CARGO_ENV + run)


INSTALL_UPDATE = cargo("cargo-update", "which cargo-install-update || cargo install cargo-update")


def pipeline():
    return build_pipeline(
        "calloop",
        branches=["master"],
        axes=[axis("rust", "1.21.0", "stable", "beta", "nightly")],
        allow_failures=[allow_failure(rust="nightly")],
        include=[
            include(rust="stable", env="BUILD_FMT=1"),
            include(rust="nightly", env="TARPAULIN=1", privileged=True),
            include(rust="stable", env="BUILD_DOC=1"),
            include(rust="stable", env="TARGET=x86_64-unknown-freebsd", privileged=True, services=["docker"]),
        ],
        # only cargo subcommand binaries; the registry is re-fetched every time
        cache=cache(".cargo", prune=[".cargo/registry"]),
        setup=steps(
            cargo("init registry", "cargo search calloop"),
            format_check=[cargo("rustfmt", "rustup component add rustfmt-preview")],
            coverage=[
                INSTALL_UPDATE,
                cargo("update cargo-update", "cargo install-update cargo-update"),
                cargo(
                    "tarpaulin",
                    'env RUSTFLAGS="--cfg procmacro2_semver_exempt" cargo install-update -i cargo-tarpaulin',
                ),
                cargo(
                    "tarpaulin sanity check",
                    'cargo tarpaulin --version || env RUSTFLAGS="--cfg procmacro2_semver_exempt" '
                    "cargo install cargo-tarpaulin --force",
                ),
            ],
            doc_build=[
                INSTALL_UPDATE,
                cargo("update cargo-update", "cargo install-update cargo-update"),
                cargo("cargo-readme", "cargo install-update -i cargo-readme"),
            ],
            cross_target=[
                INSTALL_UPDATE,
                cargo("update cargo-update", "cargo install-update cargo-update"),
                cargo("cross", "cargo install-update -i cross"),
            ],
        ),
        script=steps(
            format_check=[cargo("fmt", "cargo fmt -- --check")],
            coverage=[
                cargo("coverage", "cargo tarpaulin --ignore-tests --out Xml"),
                sh("upload coverage", "bash <(curl -s https://codecov.io/bash)"),
            ],
            doc_build=[
                cargo("doc", "cargo doc --no-deps --all-features"),
                cargo("readme", "cargo readme --output README.md"),
                sh("readme up to date", "git diff --exit-code -- README.md"),
            ],
            cross_target=[cargo("cross build", 'cross build --target "$TARGET"')],
            default=[cargo("test", "cargo test")],
        ),
        after_success=steps(
            doc_build=[sh("doc index", "cp ./doc_index.html ./target/doc/index.html")],
        ),
        deploy=deploy(
            "master",
            sh("publish pages", 'ghp-import --no-jekyll --push --force "$DEPLOY_DIR"'),
            trigger="doc-build",
            on={"rust": "stable"},
            condition="$BUILD_DOC = 1",
            local_dir="target/doc",
            token_env="GITHUB_TOKEN",
        ),
    )
