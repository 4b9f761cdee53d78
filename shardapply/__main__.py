import sys

# Function for printing the help message.
def print_help_message():
    print("""
shardapply -- Apply a program to every entry of an indexed archive, in parallel.

### Python

    > from shardapply import ApplyConfig, apply_archive
    > apply_archive(ApplyConfig("in.ffdata", "in.ffindex", "wc", ["wc", "-c"]))

### Command line

    $ python -m shardapply [-d OUT_DATA -i OUT_INDEX] [-p PARTS] [-j WORKERS]
          [--backend process|thread] [-k] [-s] [-q] [-v] [--strict]
          DATA_FILE INDEX_FILE -- PROGRAM [ARGS...]

  Run PROGRAM once per archive entry with the entry on its standard input.
  When '-d' and '-i' are given, the outputs are collected into a new archive.

    $ python -m shardapply merge -d OUT_DATA -i OUT_INDEX [-k] [-s] DATA INDEX [DATA INDEX ...]

  Append leftover shards (for example from an interrupted run) to an archive.
    """)


def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    if (len(argv) == 0) or (argv[0] in ("-h", "--help", "help")):
        print_help_message()
        return 0
    if argv[0] == "merge":
        from shardapply.merge import main as merge_main
        return merge_main(argv[1:])
    from shardapply.apply import main as apply_main
    return apply_main(argv)


if __name__ == "__main__":
    sys.exit(main())
